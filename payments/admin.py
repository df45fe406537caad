from django.contrib import admin
from .models import PaymentNotification


@admin.register(PaymentNotification)
class PaymentNotificationAdmin(admin.ModelAdmin):
    list_display = ['id', 'source', 'event', 'status_code', 'order_reference', 'transaction_id', 'outcome',
                    'signature_valid', 'received_at']
    list_filter = ['source', 'event', 'outcome', 'signature_valid', 'received_at']
    search_fields = ['order_reference', 'transaction_id', 'booking_reference']
    readonly_fields = [field.name for field in PaymentNotification._meta.fields]

    fieldsets = (
        ('Notification', {
            'fields': ('source', 'event', 'status_code', 'signature_valid', 'received_at')
        }),
        ('References', {
            'fields': ('order_reference', 'transaction_id', 'booking_reference')
        }),
        ('Processing', {
            'fields': ('outcome', 'error', 'payload')
        }),
    )

    def has_add_permission(self, request):
        return False
