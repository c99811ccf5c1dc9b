"""
Per-provider webhook authentication.

Each verifier checks the provider's signature scheme against the raw body,
enforces the replay window where the provider sends a timestamp, and
extracts the delivery id used as the dedup key.

- Slack:        X-Slack-Signature = v0=HMAC(secret, "v0:{ts}:{body}"),
                X-Slack-Request-Timestamp within the window
- Linear:       Linear-Signature = HMAC(secret, body),
                body webhookTimestamp (ms) within the window
- Fireflies:    X-Hub-Signature = [sha256=]HMAC(secret, body)
- Google Drive: X-Goog-Channel-Token = HMAC(secret, channel id)

All HMACs are SHA-256, hex encoded, compared in constant time.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional

from config import WEBHOOK_SECRETS, settings
from connectors.errors import ReplayTooOld, SignatureInvalid

logger = logging.getLogger(__name__)

# Drive resource states that describe a content change
DRIVE_CHANGE_STATES: frozenset[str] = frozenset({"update", "change"})


@dataclass
class VerifiedDelivery:
    """A webhook that passed authentication."""

    provider: str
    delivery_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    event_type: Optional[str] = None
    action: Optional[str] = None
    external_id: Optional[str] = None
    # Set for Slack url_verification handshakes; answer it and do nothing else
    challenge: Optional[str] = None
    # Set when the delivery can only mean one integration (Drive channels)
    integration_id: Optional[str] = None
    # False for notifications that carry nothing to ingest (Drive "sync")
    routable: bool = True


def sign(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def drive_channel_token(secret: str, channel_id: str) -> str:
    """Token registered with a Drive watch channel and echoed on every push."""
    return sign(secret, channel_id.encode())


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    # Starlette headers are case-insensitive; plain dicts in tests may not be
    value = headers.get(name)
    if value is None:
        value = headers.get(name.lower())
    return value


def _parse_json(provider: str, body: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(body or b"{}")
    except ValueError as exc:
        raise SignatureInvalid(f"{provider} webhook body is not JSON", provider) from exc
    if not isinstance(payload, dict):
        raise SignatureInvalid(f"{provider} webhook body is not an object", provider)
    return payload


class WebhookVerifier:
    """Authenticates inbound webhooks for all providers."""

    def __init__(
        self,
        secrets: Optional[dict[str, Optional[str]]] = None,
        max_age_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._secrets = WEBHOOK_SECRETS if secrets is None else secrets
        self._max_age: int = max_age_seconds or settings.WEBHOOK_MAX_AGE_SECONDS
        self._clock = clock
        self._verifiers: dict[str, Callable[[str, Mapping[str, str], bytes], VerifiedDelivery]] = {
            "slack": self._verify_slack,
            "linear": self._verify_linear,
            "fireflies": self._verify_fireflies,
            "google_drive": self._verify_google_drive,
        }

    def verify(self, provider: str, headers: Mapping[str, str], body: bytes) -> VerifiedDelivery:
        """
        Raises:
            KeyError: unknown provider
            SignatureInvalid: missing/mismatched signature or unset secret
            ReplayTooOld: timestamp outside the window
        """
        verifier = self._verifiers[provider]
        secret = self._secrets.get(provider)
        if not secret:
            logger.error("No webhook secret configured for %s; rejecting", provider)
            raise SignatureInvalid(f"No webhook secret configured for {provider}", provider)
        return verifier(secret, headers, body)

    def _check_age(self, provider: str, timestamp_seconds: float) -> None:
        age = abs(self._clock() - timestamp_seconds)
        if age > self._max_age:
            raise ReplayTooOld(f"{provider} webhook is {int(age)}s old", provider)

    # ── Slack ────────────────────────────────────────────────────────────

    def _verify_slack(self, secret: str, headers: Mapping[str, str], body: bytes) -> VerifiedDelivery:
        signature = _header(headers, "X-Slack-Signature")
        timestamp = _header(headers, "X-Slack-Request-Timestamp")
        if not signature or not timestamp:
            raise SignatureInvalid("Missing Slack signature headers", "slack")
        try:
            ts = float(timestamp)
        except ValueError as exc:
            raise SignatureInvalid("Bad Slack timestamp header", "slack") from exc

        expected = "v0=" + sign(secret, f"v0:{timestamp}:".encode() + body)
        if not hmac.compare_digest(expected, signature):
            raise SignatureInvalid("Slack signature mismatch", "slack")
        self._check_age("slack", ts)

        payload = _parse_json("slack", body)
        if payload.get("type") == "url_verification":
            return VerifiedDelivery(
                provider="slack",
                delivery_id=f"url_verification:{timestamp}",
                payload=payload,
                event_type="url_verification",
                challenge=payload.get("challenge"),
                routable=False,
            )

        event: dict[str, Any] = payload.get("event") or {}
        delivery_id = payload.get("event_id") or hashlib.sha256(body).hexdigest()
        return VerifiedDelivery(
            provider="slack",
            delivery_id=delivery_id,
            payload=payload,
            event_type=event.get("type") or payload.get("type"),
            action=event.get("subtype"),
            external_id=(
                f"slack_{event['channel']}_{event['ts']}"
                if event.get("channel") and event.get("ts") else None
            ),
        )

    # ── Linear ───────────────────────────────────────────────────────────

    def _verify_linear(self, secret: str, headers: Mapping[str, str], body: bytes) -> VerifiedDelivery:
        signature = _header(headers, "Linear-Signature")
        if not signature:
            raise SignatureInvalid("Missing Linear-Signature header", "linear")
        if not hmac.compare_digest(sign(secret, body), signature):
            raise SignatureInvalid("Linear signature mismatch", "linear")

        payload = _parse_json("linear", body)
        webhook_ts = payload.get("webhookTimestamp")
        if webhook_ts is not None:
            try:
                self._check_age("linear", float(webhook_ts) / 1000)
            except (TypeError, ValueError) as exc:
                raise SignatureInvalid("Bad Linear webhookTimestamp", "linear") from exc

        data: dict[str, Any] = payload.get("data") or {}
        delivery_id = (
            _header(headers, "Linear-Delivery")
            or payload.get("webhookId")
            or hashlib.sha256(body).hexdigest()
        )
        return VerifiedDelivery(
            provider="linear",
            delivery_id=delivery_id,
            payload=payload,
            event_type=payload.get("type"),
            action=payload.get("action"),
            external_id=f"linear_{data['id']}" if data.get("id") else None,
        )

    # ── Fireflies ────────────────────────────────────────────────────────

    def _verify_fireflies(self, secret: str, headers: Mapping[str, str], body: bytes) -> VerifiedDelivery:
        signature = _header(headers, "X-Hub-Signature")
        if not signature:
            raise SignatureInvalid("Missing X-Hub-Signature header", "fireflies")
        if signature.startswith("sha256="):
            signature = signature[len("sha256="):]
        if not hmac.compare_digest(sign(secret, body), signature):
            raise SignatureInvalid("Fireflies signature mismatch", "fireflies")

        payload = _parse_json("fireflies", body)
        meeting_id = payload.get("meetingId") or payload.get("meeting_id")
        return VerifiedDelivery(
            provider="fireflies",
            delivery_id=_header(headers, "X-Fireflies-Delivery") or hashlib.sha256(body).hexdigest(),
            payload=payload,
            event_type=payload.get("eventType") or payload.get("event"),
            external_id=f"fireflies_{meeting_id}" if meeting_id else None,
        )

    # ── Google Drive ─────────────────────────────────────────────────────

    def _verify_google_drive(self, secret: str, headers: Mapping[str, str], body: bytes) -> VerifiedDelivery:
        channel_id = _header(headers, "X-Goog-Channel-ID")
        channel_token = _header(headers, "X-Goog-Channel-Token")
        if not channel_id or not channel_token:
            raise SignatureInvalid("Missing Drive channel headers", "google_drive")
        if not hmac.compare_digest(drive_channel_token(secret, channel_id), channel_token):
            raise SignatureInvalid("Drive channel token mismatch", "google_drive")

        state = (_header(headers, "X-Goog-Resource-State") or "").lower()
        message_number = _header(headers, "X-Goog-Message-Number") or "0"
        resource_id = _header(headers, "X-Goog-Resource-ID")
        payload: dict[str, Any] = {
            "channel_id": channel_id,
            "resource_id": resource_id,
            "resource_uri": _header(headers, "X-Goog-Resource-URI"),
            "resource_state": state,
            "changed": _header(headers, "X-Goog-Changed"),
            "message_number": message_number,
        }
        # Channel ids are minted as "{integration_id}.{suffix}"
        integration_id = channel_id.split(".", 1)[0] if "." in channel_id else None
        return VerifiedDelivery(
            provider="google_drive",
            delivery_id=f"{channel_id}:{message_number}",
            payload=payload,
            event_type=state or None,
            external_id=f"google_{resource_id}" if resource_id else None,
            integration_id=integration_id,
            routable=state in DRIVE_CHANGE_STATES,
        )
