"""Webhook embedding and callback authentication variants.

Each provider expects its callback URL in a different place, and each signs its
callbacks differently. ``WebhookBinding`` isolates where the URL goes and how it is
encoded; ``CallbackAuth`` isolates how an incoming callback proves it is genuine.
The reconciler only ever talks to these two interfaces.
"""

import hashlib
import hmac
from abc import ABC, abstractmethod
from typing import Any, Mapping
from urllib.parse import parse_qsl, quote, urlencode, urlsplit, urlunsplit

from mediagen.services.exceptions import UnauthorizedWebhookError


class WebhookBinding(ABC):
    """Where and how a provider receives the callback URL."""

    @abstractmethod
    def bind(self, endpoint: str, body: Any, callback_url: str) -> tuple[str, Any]:
        """Embed ``callback_url`` into the outgoing request.

        Args:
            endpoint: Provider submission URL
            body: JSON body about to be sent (mutated in place when needed)
            callback_url: Fully formed webhook URL, including its own query string

        Returns:
            (endpoint, body) to submit
        """

    @abstractmethod
    def extract(self, endpoint: str, body: Any) -> str | None:
        """Recover the callback URL the way the provider's parser will read it."""


class QueryParamBinding(WebhookBinding):
    """Callback URL set as a query parameter, re-encoding the whole query string.

    Reserved characters of the embedded URL (``?``, ``&``, ``=``, ``/``, ``:``) are
    percent-encoded so the provider's query parser sees a single parameter value.
    """

    def __init__(self, param: str):
        self.param = param

    def bind(self, endpoint: str, body: Any, callback_url: str) -> tuple[str, Any]:
        parts = urlsplit(endpoint)
        pairs = parse_qsl(parts.query, keep_blank_values=True)
        query = [(k, v) for k, v in pairs if k != self.param]
        query.append((self.param, callback_url))
        encoded = urlencode(query, quote_via=quote, safe="")
        return urlunsplit(parts._replace(query=encoded)), body

    def extract(self, endpoint: str, body: Any) -> str | None:
        for key, value in parse_qsl(urlsplit(endpoint).query, keep_blank_values=True):
            if key == self.param:
                return value
        return None


class AppendedQueryParamBinding(WebhookBinding):
    """Callback URL appended as ``param=<encoded>`` to an endpoint that may already
    carry query parameters (joined with ``&`` then, ``?`` otherwise)."""

    def __init__(self, param: str):
        self.param = param

    def bind(self, endpoint: str, body: Any, callback_url: str) -> tuple[str, Any]:
        separator = "&" if "?" in endpoint else "?"
        return f"{endpoint}{separator}{self.param}={quote(callback_url, safe='')}", body

    def extract(self, endpoint: str, body: Any) -> str | None:
        query = endpoint.split("?", 1)[1] if "?" in endpoint else ""
        for key, value in parse_qsl(query, keep_blank_values=True):
            if key == self.param:
                return value
        return None


class BodyFieldBinding(WebhookBinding):
    """Callback URL carried verbatim in a JSON body field.

    For array bodies (batched task lists) the field is set on the item at
    ``task_index``.
    """

    def __init__(self, field: str, task_index: int = -1):
        self.field = field
        self.task_index = task_index

    def _target(self, body: Any) -> dict:
        if isinstance(body, list):
            return body[self.task_index]
        return body

    def bind(self, endpoint: str, body: Any, callback_url: str) -> tuple[str, Any]:
        self._target(body)[self.field] = callback_url
        return endpoint, body

    def extract(self, endpoint: str, body: Any) -> str | None:
        return self._target(body).get(self.field)


class CallbackAuth(ABC):
    """How an incoming provider callback is authenticated."""

    @abstractmethod
    def callback_params(self) -> dict[str, str]:
        """Query parameters to add to the callback URL handed to the provider."""

    @abstractmethod
    def verify(
        self,
        query: Mapping[str, str],
        headers: Mapping[str, str],
        raw_body: bytes,
        payload: Any,
    ) -> None:
        """Raise UnauthorizedWebhookError unless the callback is authentic."""


class TokenAuth(CallbackAuth):
    """Shared secret echoed back in the ``token`` query parameter.

    Providers that drop the query string on redirect may echo it in a body field
    instead, so the body field is accepted when the query parameter is absent.
    """

    def __init__(self, secret: str, param: str = "token", body_field: str = "token"):
        self.secret = secret
        self.param = param
        self.body_field = body_field

    def callback_params(self) -> dict[str, str]:
        return {self.param: self.secret}

    def verify(self, query, headers, raw_body, payload) -> None:
        if not self.secret:
            raise UnauthorizedWebhookError("Webhook secret is not configured")

        provided = query.get(self.param)
        if provided is None and isinstance(payload, dict):
            body_token = payload.get(self.body_field)
            provided = body_token if isinstance(body_token, str) else None

        if not provided:
            raise UnauthorizedWebhookError("Missing webhook token")

        if not hmac.compare_digest(provided.encode("utf-8"), self.secret.encode("utf-8")):
            raise UnauthorizedWebhookError("Invalid webhook token")


def compute_header_signature(secret: str, webhook_id: str, timestamp: str, raw_body: bytes) -> str:
    """HMAC-SHA256 hex digest over ``{id}.{timestamp}.{raw body}``."""
    message = f"{webhook_id}.{timestamp}.".encode("utf-8") + raw_body
    return hmac.new(key=secret.encode("utf-8"), msg=message, digestmod=hashlib.sha256).hexdigest()


class SignatureHeaderAuth(CallbackAuth):
    """Signed callbacks: ``webhook-id``, ``webhook-timestamp`` and
    ``webhook-signature: v3,<hex>`` headers."""

    def __init__(self, secret: str, version: str = "v3"):
        self.secret = secret
        self.version = version

    def callback_params(self) -> dict[str, str]:
        return {}

    def verify(self, query, headers, raw_body, payload) -> None:
        if not self.secret:
            raise UnauthorizedWebhookError("Webhook signing secret is not configured")

        webhook_id = headers.get("webhook-id")
        timestamp = headers.get("webhook-timestamp")
        signature_header = headers.get("webhook-signature")
        if not (webhook_id and timestamp and signature_header):
            raise UnauthorizedWebhookError("Missing webhook signature headers")

        expected = compute_header_signature(self.secret, webhook_id, timestamp, raw_body)

        # Header may carry several space-separated "version,signature" entries
        for entry in signature_header.split():
            version, _, signature = entry.partition(",")
            if version != self.version or not signature:
                continue
            if hmac.compare_digest(signature.lower(), expected):
                return

        raise UnauthorizedWebhookError("Invalid webhook signature")
