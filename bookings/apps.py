from django.apps import AppConfig


class BookingsConfig(AppConfig):
    name = 'bookings'
    default_auto_field = 'django.db.models.BigAutoField'

    def ready(self):
        from . import notifications  # noqa: F401
