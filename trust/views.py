"""Operational endpoints for the trust app."""

from django.contrib.admin.views.decorators import staff_member_required
from django.http import HttpResponse, JsonResponse

from . import health, monitoring


@staff_member_required
def system_health(request):
    """Return a JSON snapshot of backend, liveness, fraud and worker health."""

    return JsonResponse(
        {
            "backend": health.backend_health(),
            "liveness": health.liveness_activity(),
            "fraud": health.fraud_activity(),
            "worker": health.worker_health(),
            "metrics": monitoring.get_metrics_snapshot(),
        }
    )


@staff_member_required
def metrics(request):
    """Expose Prometheus metrics for the trust pipeline."""

    payload = monitoring.export_metrics()
    return HttpResponse(payload, content_type=monitoring.prometheus_content_type())
