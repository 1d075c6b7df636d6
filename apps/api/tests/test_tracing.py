from __future__ import annotations

import pytest
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode

from pointsweep_api.core.errors import ValidationError
from pointsweep_api.core.settings import Settings
from pointsweep_api.observability import tracing
from pointsweep_api.services.settlement.payments import PaymentSettlement

from conftest import MARKET_OPEN_AT, seed_counterparties
from test_settlement import _seed_orders


@pytest.fixture
def spans(monkeypatch) -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    monkeypatch.setattr(tracing, "_provider", provider)
    return exporter


def test_pipeline_span_prefixes_attributes_and_drops_none(spans):
    with tracing.pipeline_span("sweep.batch", batch_id="PREP-1", merchant_id=None, attempts=2):
        pass

    (span,) = spans.get_finished_spans()
    assert span.name == "pointsweep.sweep.batch"
    assert dict(span.attributes) == {"pointsweep.batch_id": "PREP-1", "pointsweep.attempts": 2}


def test_pipeline_span_records_errors_and_reraises(spans):
    with pytest.raises(ValidationError):
        with tracing.pipeline_span("callback.apply", request_id="req-1"):
            raise ValidationError("order_id is required")

    (span,) = spans.get_finished_spans()
    assert span.status.status_code == StatusCode.ERROR
    assert [event.name for event in span.events] == ["exception"]


@pytest.mark.asyncio
async def test_mark_paid_is_traced_with_affected_count(session_factory, delivery, spans):
    await seed_counterparties(session_factory)
    await _seed_orders(session_factory)
    settlement = PaymentSettlement(session_factory, delivery=delivery, clock=lambda: MARKET_OPEN_AT)

    await settlement.mark_paid("M1")

    by_name = {span.name: span for span in spans.get_finished_spans()}
    settled = by_name["pointsweep.settlement.mark_paid"]
    assert settled.attributes["pointsweep.merchant_id"] == "M1"
    assert settled.attributes["pointsweep.paid_batch_id"] == "ACH_M1_20261014_150000"
    assert settled.attributes["pointsweep.affected"] == 2
    assert "pointsweep.notification.deliver" in by_name


def test_otlp_headers_are_parsed_from_a_comma_list():
    settings = Settings(
        otel_exporter_otlp_endpoint="https://collector.test/v1/traces",
        otel_exporter_otlp_headers="x-team=pointsweep, authorization=Bearer abc,broken",
    )

    assert settings.otel_exporter_otlp_headers == {"x-team": "pointsweep", "authorization": "Bearer abc"}
    assert tracing._exporter(settings) is not None
    assert tracing._exporter(Settings(otel_exporter_otlp_endpoint="")) is None
