from django.dispatch import Signal

# Sent after the transaction that moved a booking commits.
# kwargs: booking, previous_status, status, actor
booking_status_changed = Signal()
