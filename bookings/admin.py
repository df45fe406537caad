from django.contrib import admin
from .models import Booking, CommunicationLogEntry, HotelMarkupSettings, ServiceProvider, StatusHistoryEntry
from .pricing import format_amount


class ReadOnlyInline(admin.TabularInline):
    extra = 0
    can_delete = False

    def has_add_permission(self, request, obj=None):
        return False

    def has_change_permission(self, request, obj=None):
        return False


class StatusHistoryInline(ReadOnlyInline):
    model = StatusHistoryEntry
    fields = ['status', 'timestamp', 'actor', 'automatic', 'notes']
    readonly_fields = fields


class CommunicationLogInline(ReadOnlyInline):
    model = CommunicationLogEntry
    fields = ['sender', 'message_type', 'message', 'timestamp']
    readonly_fields = fields


@admin.register(ServiceProvider)
class ServiceProviderAdmin(admin.ModelAdmin):
    list_display = ['provider_id', 'business_name', 'markup_percentage', 'updated_at']
    search_fields = ['provider_id', 'business_name']


@admin.register(HotelMarkupSettings)
class HotelMarkupSettingsAdmin(admin.ModelAdmin):
    list_display = ['hotel_id', 'default_percentage', 'categories', 'updated_at']
    search_fields = ['hotel_id']


@admin.register(Booking)
class BookingAdmin(admin.ModelAdmin):
    list_display = ['booking_reference', 'kind', 'status', 'payment_status', 'total_display', 'sla_status', 'created_at']
    list_filter = ['kind', 'status', 'payment_status', 'sla_status', 'created_at']
    search_fields = ['booking_reference', 'guest_id', 'service_provider_id', 'gateway_transaction_id']
    readonly_fields = ['booking_reference', 'kind', 'status', 'created_at', 'updated_at']
    inlines = [StatusHistoryInline, CommunicationLogInline]

    fieldsets = (
        ('Booking', {
            'fields': ('booking_reference', 'kind', 'status', 'guest_id', 'hotel_id', 'service_provider_id', 'service_id')
        }),
        ('Quote', {
            'fields': ('quote_base_price_cents', 'quote_markup_percentage', 'quote_final_price_cents',
                       'quoted_at', 'quote_expires_at', 'quote_notes', 'markup_percentage', 'markup_amount_cents')
        }),
        ('Payment', {
            'fields': ('payment_method', 'payment_status', 'payment_total_cents', 'payment_paid_cents',
                       'payment_refunded_cents', 'currency', 'paid_at', 'gateway_transaction_id',
                       'gateway_order_reference', 'gateway_failure_reason')
        }),
        ('SLA', {
            'fields': ('sla_status', 'sla_actual_response_minutes', 'sla_actual_completion_minutes',
                       'sla_response_on_time', 'sla_completion_on_time')
        }),
        ('Timestamps', {
            'fields': ('created_at', 'updated_at')
        }),
    )

    def total_display(self, obj):
        return f"{format_amount(obj.payment_total_cents)} {obj.currency}"
    total_display.short_description = 'Total'
