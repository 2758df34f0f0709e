"""Tests for the generator, publisher and notifier adapters (no network)."""

import logging
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
import requests

from contentqueue.clients.base import ContentGenerator, ExternalServiceError, Publisher
from contentqueue.clients.litellm_generator import LiteLLMGenerator, parse_generation
from contentqueue.clients.notifiers import LoggingNotifier, WebhookNotifier, build_notifier
from contentqueue.clients.wordpress_publisher import WordPressPublisher
from contentqueue.core.config import Settings
from contentqueue.core.timeutil import utc_now
from contentqueue.models import Alert
from contentqueue.services.retry_policy import FailureKind, classify_error


def _completion(text):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=text))])


def _response(status_code=200, body=None, headers=None):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = body if body is not None else {}
    response.headers = headers or {}
    return response


def _alert(**overrides):
    fields = dict(
        id="alert-1", rule_id="rule-1", severity="critical", message="Failure rate 22.0%",
        value=0.22, threshold=0.2, window_seconds=86400, total_runs=100, failed_runs=22,
        escalation_level=0, created_at=utc_now(), resolved=False,
    )
    fields.update(overrides)
    return Alert(**fields)


class TestParseGeneration:

    def test_title_tag(self):
        assert parse_generation("<title>Cold Brew</title>\nSteep overnight.") == ("Cold Brew", "Steep overnight.")

    def test_markdown_heading(self):
        assert parse_generation("# Cold Brew\n\nSteep overnight.") == ("Cold Brew", "Steep overnight.")

    def test_title_prefix(self):
        assert parse_generation('Title: "Cold Brew"\nBody') == ("Cold Brew", "Body")

    def test_single_line_has_no_content(self):
        assert parse_generation("Just a title") == ("Just a title", "")


class TestLiteLLMGenerator:

    def test_satisfies_protocol(self):
        assert isinstance(LiteLLMGenerator(), ContentGenerator)

    def test_generate_passes_model_and_credentials(self):
        generator = LiteLLMGenerator(api_key="test-key", api_base="http://llm.local")
        with patch("litellm.completion", return_value=_completion("# Title\nBody text")) as completion:
            result = generator.generate("Write about coffee", "gpt-4o-mini")

        assert (result.title, result.content) == ("Title", "Body text")
        kwargs = completion.call_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["api_key"] == "test-key"
        assert kwargs["api_base"] == "http://llm.local"
        assert kwargs["messages"][-1] == {"role": "user", "content": "Write about coffee"}

    def test_provider_error_carries_status_and_retry_after(self):
        error = RuntimeError("RateLimitError: slow down")
        error.status_code = 429
        error.response = SimpleNamespace(headers={"retry-after": "30"})

        with patch("litellm.completion", side_effect=error):
            with pytest.raises(ExternalServiceError) as exc:
                LiteLLMGenerator().generate("prompt", "gpt-4o-mini")

        assert exc.value.status_code == 429
        assert exc.value.retry_after == 30.0
        assert classify_error(exc.value).kind == FailureKind.RATE_LIMITED


class TestWordPressPublisher:

    def _publisher(self, session):
        return WordPressPublisher("https://blog.example.com/", "editor", "abcd efgh", session=session)

    def test_requires_site_url(self):
        with pytest.raises(ValueError):
            WordPressPublisher("", "editor", "pw")

    def test_creates_draft_and_resolves_terms(self):
        session = MagicMock()
        session.request.side_effect = [
            _response(body=[{"id": 5, "name": "Coffee"}]),  # tag search
            _response(body=[]),                             # category search
            _response(body={"id": 9}),                      # category create
            _response(body={"id": 123}),                    # post create
        ]
        publisher = self._publisher(session)
        assert isinstance(publisher, Publisher)

        result = publisher.publish("Title", "Body", ["coffee"], ["Guides"])

        assert result.external_ref == "123"
        method, url = session.request.call_args.args
        assert (method, url) == ("POST", "https://blog.example.com/wp-json/wp/v2/posts")
        assert session.request.call_args.kwargs["json"] == {
            "title": "Title", "content": "Body", "status": "draft", "tags": [5], "categories": [9],
        }
        assert session.auth == ("editor", "abcd efgh")

    def test_http_error_maps_status_and_retry_after(self):
        session = MagicMock()
        session.request.return_value = _response(429, {"message": "slow down"}, {"Retry-After": "120"})

        with pytest.raises(ExternalServiceError) as exc:
            self._publisher(session).publish("Title", "Body", [], [])

        assert exc.value.status_code == 429
        assert exc.value.retry_after == 120.0
        assert "slow down" in str(exc.value)

    def test_connection_error_is_transient(self):
        session = MagicMock()
        session.request.side_effect = requests.exceptions.ConnectionError("refused")

        with pytest.raises(ExternalServiceError) as exc:
            self._publisher(session).publish("Title", "Body", [], [])

        assert exc.value.status_code == 0
        assert classify_error(exc.value).retryable

    def test_missing_post_id_is_not_retryable(self):
        session = MagicMock()
        session.request.return_value = _response(body={})

        with pytest.raises(ExternalServiceError) as exc:
            self._publisher(session).publish("Title", "Body", [], [])

        assert classify_error(exc.value).kind == FailureKind.VALIDATION


class TestNotifiers:

    def test_webhook_posts_alert_json(self):
        with patch("contentqueue.clients.notifiers.requests.post") as post:
            WebhookNotifier("https://hooks.example.com/alerts").notify(_alert())

        payload = post.call_args.kwargs["json"]
        assert post.call_args.args == ("https://hooks.example.com/alerts",)
        assert payload["severity"] == "critical"
        assert payload["failed_runs"] == 22
        post.return_value.raise_for_status.assert_called_once()

    def test_logging_notifier(self, caplog):
        with caplog.at_level(logging.WARNING):
            LoggingNotifier().notify(_alert())
        assert "[CRITICAL] Failure rate 22.0%" in caplog.text

    def test_build_notifier(self):
        assert isinstance(build_notifier(Settings(_env_file=None)), LoggingNotifier)
        webhook = build_notifier(Settings(alert_webhook_url="https://hooks.example.com", _env_file=None))
        assert isinstance(webhook, WebhookNotifier)
