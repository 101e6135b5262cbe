"""Unit tests for the structlog processor chain."""

import json
import logging

import pytest
import structlog

from card_gateway.logging_config import bind_request_context, build_processors


def render(processors, **event):
    logger = logging.getLogger("card_gateway.tests")
    result = {"event": "card_tokenized", **event}
    for processor in processors:
        result = processor(logger, "info", result)
    return result


@pytest.fixture(autouse=True)
def clean_context():
    structlog.contextvars.clear_contextvars()
    yield
    structlog.contextvars.clear_contextvars()


class TestProcessorChain:
    def test_card_data_is_masked_before_rendering(self):
        line = render(
            build_processors(format_as_json=True),
            card_number="4242424242424242",
            request={"card_cvv": "123", "provider": "stripe"},
        )

        event = json.loads(line)
        assert event["card_number"] == "[REDACTED]"
        assert event["request"] == {"card_cvv": "[REDACTED]", "provider": "stripe"}
        assert "4242424242424242" not in line

    def test_service_fields_and_level_are_stamped(self):
        event = json.loads(render(build_processors("card-gateway", "staging")))

        assert event["service"] == "card-gateway"
        assert event["environment"] == "staging"
        assert event["level"] == "info"
        assert event["logger"] == "card_gateway.tests"
        assert event["timestamp"].endswith("Z")

    def test_console_renderer_when_json_disabled(self):
        processors = build_processors(format_as_json=False)

        assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)


class TestRequestContext:
    def test_bound_fields_reach_events(self):
        bind_request_context(request_id="req-1", user_id="user_1")

        event = json.loads(render(build_processors()))

        assert event["request_id"] == "req-1"
        assert event["user_id"] == "user_1"

    def test_rebinding_replaces_previous_request(self):
        bind_request_context(request_id="req-1", user_id="user_1")
        bind_request_context(request_id=None, webhook_provider="stripe")

        assert structlog.contextvars.get_contextvars() == {"webhook_provider": "stripe"}
