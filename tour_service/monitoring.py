"""Prometheus metrics instrumentation for application monitoring."""

from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator

from .config import settings
from .logger import logger

METRICS_PATH = "/metrics"


def setup_monitoring(app: FastAPI) -> None:
    """Instrument every route and expose the Prometheus scrape endpoint.

    Requests are labelled by route template, so ``/tours/{tour_id}`` is one
    series however many ids are fetched. Requests that match no route share
    the ``none`` handler label.
    """
    if not settings.METRICS_ENABLED:
        logger.info("Metrics disabled, /metrics not exposed")
        return

    instrumentator = Instrumentator(
        should_group_status_codes=False,
        should_ignore_untemplated=False,
        should_group_untemplated=True,
        should_respect_env_var=False,
        should_instrument_requests_inprogress=True,
        excluded_handlers=[METRICS_PATH],
        inprogress_name="http_requests_inprogress",
        inprogress_labels=True,
    )
    instrumentator.instrument(app).expose(app, endpoint=METRICS_PATH, include_in_schema=True)
