from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods

from . import services
from .http import json_endpoint, read_json, validated
from .serializers import (
    ActorSerializer,
    CancelSerializer,
    FeedbackSerializer,
    QuoteSerializer,
    RejectSerializer,
    TransportationRequestSerializer,
    serialize_booking,
)


@csrf_exempt
@require_http_methods(["POST"])
@json_endpoint
def request_transportation(request):
    data = validated(TransportationRequestSerializer, read_json(request))
    booking = services.request_transportation(**data)
    return JsonResponse(serialize_booking(booking), status=201)


@require_http_methods(["GET"])
@json_endpoint
def get_booking(request, reference):
    return JsonResponse(serialize_booking(services.get_booking(reference)))


@csrf_exempt
@require_http_methods(["POST"])
@json_endpoint
def provide_quote(request, reference):
    data = validated(QuoteSerializer, read_json(request))
    booking = services.provide_quote(reference, **data)
    return JsonResponse(serialize_booking(booking))


@csrf_exempt
@require_http_methods(["POST"])
@json_endpoint
def accept_quote(request, reference):
    data = validated(ActorSerializer, read_json(request))
    return JsonResponse(serialize_booking(services.accept_quote(reference, **data)))


@csrf_exempt
@require_http_methods(["POST"])
@json_endpoint
def reject_quote(request, reference):
    data = validated(RejectSerializer, read_json(request))
    return JsonResponse(serialize_booking(services.reject_quote(reference, **data)))


@csrf_exempt
@require_http_methods(["POST"])
@json_endpoint
def cancel_booking(request, reference):
    data = validated(CancelSerializer, read_json(request))
    return JsonResponse(serialize_booking(services.cancel_booking(reference, **data)))


@csrf_exempt
@require_http_methods(["POST"])
@json_endpoint
def choose_cash(request, reference):
    data = validated(ActorSerializer, read_json(request))
    return JsonResponse(serialize_booking(services.choose_cash(reference, **data)))


@csrf_exempt
@require_http_methods(["POST"])
@json_endpoint
def start_service(request, reference):
    data = validated(ActorSerializer, read_json(request))
    return JsonResponse(serialize_booking(services.start_service(reference, **data)))


@csrf_exempt
@require_http_methods(["POST"])
@json_endpoint
def complete_booking(request, reference):
    data = validated(ActorSerializer, read_json(request))
    return JsonResponse(serialize_booking(services.complete_booking(reference, **data)))


@csrf_exempt
@require_http_methods(["POST"])
@json_endpoint
def submit_feedback(request, reference):
    data = validated(FeedbackSerializer, read_json(request))
    return JsonResponse(serialize_booking(services.submit_feedback(reference, **data)))
