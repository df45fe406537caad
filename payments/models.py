from django.db import models
from django.utils import timezone


class PaymentNotification(models.Model):
    """Audit row for every gateway notification that reached us."""

    SOURCE_CHOICES = [
        ('webhook', 'Webhook'),
        ('redirect', 'Redirect'),
    ]

    OUTCOME_CHOICES = [
        ('received', 'Received'),
        ('rejected', 'Rejected'),
        ('completed', 'Completed'),
        ('created', 'Created'),
        ('failed', 'Failed'),
        ('status_updated', 'Status Updated'),
        ('refunded', 'Refunded'),
        ('already_processed', 'Already Processed'),
        ('ignored', 'Ignored'),
        ('error', 'Error'),
    ]

    source = models.CharField(max_length=10, choices=SOURCE_CHOICES)
    event = models.CharField(max_length=20, blank=True)
    status_code = models.CharField(max_length=20, blank=True)
    order_reference = models.CharField(max_length=128, blank=True, db_index=True)
    transaction_id = models.CharField(max_length=128, blank=True, db_index=True)
    payload = models.JSONField(default=dict, blank=True)
    signature_valid = models.BooleanField(default=False)
    outcome = models.CharField(max_length=20, choices=OUTCOME_CHOICES, default='received')
    error = models.TextField(blank=True)
    booking_reference = models.CharField(max_length=32, blank=True)
    received_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = 'payments_notification'
        ordering = ['-received_at']
        indexes = [
            models.Index(fields=['transaction_id', 'event', 'outcome']),
        ]

    def __str__(self):
        return f"{self.source}:{self.event} {self.order_reference} ({self.outcome})"
