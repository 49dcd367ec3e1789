"""
Checkout correlation tokens (Mercado Pago ``external_reference``).

New references are versioned and signed: ``v2.<itsdangerous payload>``.
The subscription row written at checkout is the primary correlation; the
token is only read when that row cannot be found. Legacy colon-delimited
references are still parsed:

    plan:<plan>:cycle:<cycle>:est:<tenant>:<nonce>
    wallet:whatsapp_topup[:pack:<code>]:msgs:<n>:est:<tenant>:uuid:<nonce>
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from itsdangerous import BadSignature, URLSafeSerializer

from ...plans import normalize_billing_cycle, normalize_plan

logger = logging.getLogger(__name__)

REFERENCE_VERSION = "v2"
REFERENCE_SALT = "billing-external-reference"
TOPUP_KIND = "whatsapp_topup"
PLAN_KIND = "plan"
LEGACY_TOPUP_PREFIX = "wallet:whatsapp_topup"


@dataclass(frozen=True)
class ExternalReference:
    kind: str  # plan, whatsapp_topup
    tenant_id: Optional[int]
    plan: Optional[str] = None
    cycle: str = "monthly"
    messages: Optional[int] = None
    pack_code: Optional[str] = None
    nonce: Optional[str] = None
    version: str = REFERENCE_VERSION

    @property
    def is_topup(self) -> bool:
        return self.kind == TOPUP_KIND


def _serializer(secret: str) -> URLSafeSerializer:
    return URLSafeSerializer(secret, salt=REFERENCE_SALT)


def _to_int(value) -> Optional[int]:
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


def build_plan_reference(secret: str, tenant_id: int, plan: str, cycle: str) -> str:
    payload = {
        "k": PLAN_KIND,
        "t": tenant_id,
        "p": plan,
        "c": normalize_billing_cycle(cycle),
        "n": uuid.uuid4().hex,
    }
    return f"{REFERENCE_VERSION}.{_serializer(secret).dumps(payload)}"


def build_topup_reference(secret: str, tenant_id: int, messages: int, pack_code: Optional[str] = None) -> str:
    payload = {"k": TOPUP_KIND, "t": tenant_id, "m": messages, "pc": pack_code, "n": uuid.uuid4().hex}
    return f"{REFERENCE_VERSION}.{_serializer(secret).dumps(payload)}"


def _parse_signed(value: str, secret: str) -> Optional[ExternalReference]:
    token = value[len(REFERENCE_VERSION) + 1 :]
    try:
        payload = _serializer(secret).loads(token)
    except BadSignature:
        logger.warning(f"⚠️ External reference signature invalid: {value[:40]}...")
        return None
    if not isinstance(payload, dict):
        return None

    kind = payload.get("k")
    if kind not in (PLAN_KIND, TOPUP_KIND):
        return None
    return ExternalReference(
        kind=kind,
        tenant_id=_to_int(payload.get("t")),
        plan=normalize_plan(payload.get("p")),
        cycle=normalize_billing_cycle(payload.get("c")),
        messages=_to_int(payload.get("m")),
        pack_code=payload.get("pc"),
        nonce=payload.get("n"),
    )


def _parse_legacy(value: str) -> Optional[ExternalReference]:
    parts = value.split(":")
    tokens = {}
    for index in range(0, len(parts) - 1, 2):
        tokens[parts[index].strip().lower()] = parts[index + 1].strip()

    is_topup = value.lower().startswith(LEGACY_TOPUP_PREFIX) or tokens.get("wallet", "").lower() == TOPUP_KIND
    tenant_id = _to_int(tokens.get("est"))
    if is_topup:
        return ExternalReference(
            kind=TOPUP_KIND,
            tenant_id=tenant_id,
            messages=_to_int(tokens.get("msgs")),
            pack_code=tokens.get("pack") or None,
            nonce=tokens.get("uuid"),
            version="v1",
        )
    if "plan" in tokens:
        return ExternalReference(
            kind=PLAN_KIND,
            tenant_id=tenant_id,
            plan=normalize_plan(tokens.get("plan")),
            cycle=normalize_billing_cycle(tokens.get("cycle")),
            nonce=parts[-1] if len(parts) % 2 else None,
            version="v1",
        )
    return None


def parse_external_reference(value: Optional[str], secret: str) -> Optional[ExternalReference]:
    """Decode an external reference; None when it is empty, tampered or unrecognized"""
    value = (value or "").strip()
    if not value:
        return None
    if value.startswith(f"{REFERENCE_VERSION}."):
        return _parse_signed(value, secret)
    return _parse_legacy(value)
