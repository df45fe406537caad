from django.core.management.base import BaseCommand

from bookings.services import expire_overdue_quotes


class Command(BaseCommand):
    help = 'Move quote_sent bookings whose quote has expired to quote_expired'

    def handle(self, *args, **options):
        expired = expire_overdue_quotes()
        if expired:
            self.stdout.write(self.style.SUCCESS(f'Expired {len(expired)} quote(s): {", ".join(expired)}'))
        else:
            self.stdout.write('No quotes needed expiring.')
