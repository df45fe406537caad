from django.urls import path
from . import views

urlpatterns = [
    path('transportation/', views.request_transportation, name='request_transportation'),
    path('<str:reference>/', views.get_booking, name='get_booking'),
    path('<str:reference>/quote/', views.provide_quote, name='provide_quote'),
    path('<str:reference>/accept/', views.accept_quote, name='accept_quote'),
    path('<str:reference>/reject/', views.reject_quote, name='reject_quote'),
    path('<str:reference>/cancel/', views.cancel_booking, name='cancel_booking'),
    path('<str:reference>/cash/', views.choose_cash, name='choose_cash'),
    path('<str:reference>/start/', views.start_service, name='start_service'),
    path('<str:reference>/complete/', views.complete_booking, name='complete_booking'),
    path('<str:reference>/feedback/', views.submit_feedback, name='submit_feedback'),
]
