from django.urls import path
from . import views

urlpatterns = [
    path('kashier/sessions/', views.create_payment_session, name='kashier_create_session'),
    path('kashier/pay-first/', views.create_pay_first_session, name='kashier_pay_first'),
    path('kashier/webhook/', views.kashier_webhook, name='kashier_webhook'),
    path('kashier/confirm/', views.confirm_redirect, name='kashier_confirm'),
]
