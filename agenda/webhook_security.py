"""
Webhook Security Module

Signature verification for Mercado Pago notifications.

Mercado Pago signs a manifest built from the notification fields:

    x-signature: ts=<timestamp>,v1=<hex hmac-sha256>
    manifest:    id:<data.id>;request-id:<x-request-id>;ts:<ts>;

Integrations have seen several manifest shapes over time (topic-keyed,
underscore-keyed, with and without the trailing ';') and timestamps in both
seconds and milliseconds, so every combination is tried against up to two
live secrets. Verification never raises to the gateway; callers log the
outcome and acknowledge the notification.
"""

import hashlib
import hmac
import logging
import re
from dataclasses import dataclass
from typing import Mapping, Optional

from fastapi import Request

from .domain.billing.exceptions import SignatureInvalid

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX_LENGTH = 12
HEADER_PREFIX_LENGTH = 32

_TS_KEYS = ("ts", "t", "time", "timestamp")
_MISSING_REASONS = {
    "x-signature": "missing_x_signature",
    "ts": "missing_ts",
    "v1": "missing_v1",
    "x-request-id": "missing_x_request_id",
    "id": "missing_id",
}


@dataclass
class SignatureResult:
    ok: bool
    reason: str
    id: Optional[str] = None
    manifest: Optional[str] = None
    used_secret_last4: Optional[str] = None
    topic: Optional[str] = None


def constant_time_compare(a: str, b: str) -> bool:
    """
    Compare two strings in constant time to prevent timing attacks.
    Uses hmac.compare_digest which is designed for this purpose.
    """
    if not a or not b:
        return False
    try:
        return hmac.compare_digest(a.encode("ascii"), b.encode("ascii"))
    except UnicodeEncodeError:
        return False


def compute_hmac_sha256(secret: str, payload: bytes) -> str:
    """Compute HMAC-SHA256 signature of payload"""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def sign_manifest(secret: str, manifest: str) -> str:
    return compute_hmac_sha256(secret, manifest.encode("utf-8"))


def build_manifest(resource_id: str, request_id: str, ts: str) -> str:
    return f"id:{resource_id};request-id:{request_id};ts:{ts};"


def _header_prefix(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    trimmed = str(value).strip()
    return trimmed[:HEADER_PREFIX_LENGTH] or None


def parse_signature_header(value: Optional[str]) -> tuple[Optional[str], Optional[str]]:
    """Parse 'ts=..., v1=...' (keys case-insensitive, quotes stripped) into (ts, v1)"""
    if not value:
        return None, None

    data = {}
    for part in str(value).split(","):
        if "=" not in part:
            continue
        key, _, raw = part.partition("=")
        key = key.strip().lower()
        if key:
            data[key] = raw.strip().strip('"').strip("'")

    ts = next((data[k] for k in _TS_KEYS if data.get(k)), None)
    return ts, data.get("v1") or None


def resolve_webhook_id(query: Mapping, body: Optional[dict]) -> tuple[str, Optional[str]]:
    """Resource id and where it came from; query wins over body"""
    body = body if isinstance(body, dict) else {}
    data = body.get("data") if isinstance(body.get("data"), dict) else {}
    candidates = [
        (query.get("data.id"), "query.data.id"),
        (query.get("id"), "query.id"),
        (data.get("id"), "body.data.id"),
        (body.get("id"), "body.id"),
    ]
    for value, source in candidates:
        normalized = str(value or "").strip()
        if normalized:
            return normalized, source
    return "", None


def resolve_webhook_topics(query: Mapping, body: Optional[dict], headers: Mapping) -> list[str]:
    body = body if isinstance(body, dict) else {}
    raw = [
        query.get("type"),
        query.get("topic"),
        body.get("type"),
        body.get("topic"),
        body.get("entity"),
        headers.get("x-topic"),
    ]
    topics = []
    for value in raw:
        normalized = str(value or "").strip()
        if normalized and normalized not in topics:
            topics.append(normalized)
    return topics


def timestamp_candidates(ts: str) -> list[str]:
    """The timestamp as received plus its seconds/milliseconds counterpart"""
    candidates = [ts]
    if re.fullmatch(r"\d+", ts):
        if len(ts) >= 13:
            candidates.append(str(int(ts) // 1000))
        else:
            candidates.append(str(int(ts) * 1000))
    return candidates


def build_manifest_candidates(
    resource_id: str, request_id: Optional[str], topics: list[str], ts: str
) -> list[str]:
    ids = [resource_id]
    # Alphanumeric ids are signed lowercased
    if resource_id.lower() != resource_id:
        ids.append(resource_id.lower())

    manifests = []
    for ts_value in timestamp_candidates(ts):
        for id_value in ids:
            if request_id:
                base = build_manifest(id_value, request_id, ts_value)
                manifests.append(base)
                manifests.append(base.rstrip(";"))
                manifests.append(f"id:{id_value};request_id:{request_id};ts:{ts_value};")
            for topic in topics:
                manifests.append(f"id:{id_value};topic:{topic};ts:{ts_value};")

    unique = []
    for manifest in manifests:
        if manifest not in unique:
            unique.append(manifest)
    return unique


def verify_mercadopago_signature(
    headers: Mapping,
    query: Mapping,
    body: Optional[dict],
    secrets: tuple,
) -> SignatureResult:
    """
    Verify a Mercado Pago notification signature.

    Args:
        headers: Request headers (any case)
        query: Query string parameters
        body: Parsed JSON body, if any
        secrets: Up to two live webhook secrets

    Returns:
        SignatureResult with ok=True and the matching manifest, or ok=False and a reason
    """
    headers = {str(k).lower(): v for k, v in (headers or {}).items()}
    query = query or {}

    signature_header = str(headers.get("x-signature") or "").strip()
    ts, v1 = parse_signature_header(signature_header)
    request_id = str(headers.get("x-request-id") or "").strip()
    resource_id, id_source = resolve_webhook_id(query, body)
    topics = resolve_webhook_topics(query, body, headers)
    topic = topics[0] if topics else None

    log_context = (
        f"id={resource_id or None} id_source={id_source} topic={topic} "
        f"x_request_id_present={bool(request_id)} "
        f"x_signature_prefix={_header_prefix(signature_header)} ts={ts}"
    )

    present = {
        "x-signature": bool(signature_header),
        "ts": bool(ts),
        "v1": bool(v1),
        "x-request-id": bool(request_id or topics),
        "id": bool(resource_id),
    }
    missing = [field for field, ok in present.items() if not ok]
    if missing:
        reason = _MISSING_REASONS[missing[0]]
        logger.warning(f"⚠️ Webhook signature fields missing ({', '.join(missing)}): {log_context}")
        return SignatureResult(ok=False, reason=reason, id=resource_id or None, topic=topic)

    live_secrets = [s for s in (secrets or ()) if s][:2]
    manifests = build_manifest_candidates(resource_id, request_id or None, topics, ts)
    if not live_secrets:
        logger.warning(f"⚠️ Webhook secret not configured, cannot verify: {log_context}")
        return SignatureResult(
            ok=False, reason="missing_secret", id=resource_id, manifest=manifests[0], topic=topic
        )

    expected_prefixes = []
    for index, secret in enumerate(live_secrets, start=1):
        for manifest in manifests:
            expected = sign_manifest(secret, manifest)
            if constant_time_compare(expected, v1):
                last4 = secret[-4:]
                logger.info(
                    f"✅ Webhook signature verified: {log_context} secret=SECRET_{index} "
                    f"used_secret_last4={last4} manifest={manifest}"
                )
                return SignatureResult(
                    ok=True,
                    reason="ok",
                    id=resource_id,
                    manifest=manifest,
                    used_secret_last4=last4,
                    topic=topic,
                )
        expected_prefixes.append(
            f"SECRET_{index}:{sign_manifest(secret, manifests[0])[:SIGNATURE_PREFIX_LENGTH]}"
        )

    logger.warning(
        f"🚫 Webhook signature mismatch: {log_context} manifest={manifests[0]} "
        f"v1_prefix={v1[:SIGNATURE_PREFIX_LENGTH]} expected_prefixes={expected_prefixes} "
        f"candidates={len(manifests)}"
    )
    return SignatureResult(
        ok=False, reason="invalid_signature", id=resource_id, manifest=manifests[0], topic=topic
    )


async def verify_mercadopago_webhook(
    request: Request, secrets: tuple, body: Optional[dict] = None, raise_on_failure: bool = False
) -> SignatureResult:
    """
    Verify a Mercado Pago webhook request.

    Args:
        request: FastAPI request object
        secrets: Live webhook secrets
        body: Already-parsed JSON body (parsed here when omitted)
        raise_on_failure: If True, raises SignatureInvalid on failure

    Returns:
        SignatureResult
    """
    if body is None:
        try:
            body = await request.json()
        except ValueError:
            body = {}

    result = verify_mercadopago_signature(
        request.headers, dict(request.query_params), body, secrets
    )
    if not result.ok and raise_on_failure:
        raise SignatureInvalid(f"Webhook signature rejected: {result.reason}", reason=result.reason)
    return result
