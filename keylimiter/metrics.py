from fastapi import APIRouter
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, generate_latest

DECISIONS = Counter(
    "keylimiter_decisions_total",
    "Admission decisions",
    ["result"],
)
EVICTIONS = Counter(
    "keylimiter_evictions_total",
    "Idle buckets evicted by the cleanup sweep",
)
# summed over every limiter in the process; call reset() before dropping one
BUCKETS = Gauge(
    "keylimiter_buckets",
    "Live buckets across all limiters",
)


def router() -> APIRouter:
    r = APIRouter()

    @r.get("/metrics", include_in_schema=False)
    def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return r
