"""Field-to-signer resolution.

Each template field is bound to the signer whose captured values populate it.
The binding is tried through an ordered list of strategies; the first one
that yields exactly one signer wins. Only the stable-key strategy is a clean
match, every other strategy is reported as a ``DegradedResolution`` so
operators can find templates with poor identity data.

Resolution is pure: it reads the rows it is given and performs no I/O, so the
same inputs always produce the same mapping.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .errors import MissingFieldData
from .models import FieldKind, SchemaField, Signer, SignerStatus
from .utils import load_json

logger = logging.getLogger(__name__)


class MatchMethod:
    STABLE_KEY = "stable_key"
    CONTACT_ADDRESS = "contact_address"
    SECONDARY_IDENTIFIER = "secondary_identifier"
    ORDER_INDEX = "order_index"
    LOWEST_SIGNED = "lowest_signed"


@dataclass(frozen=True)
class Match:
    signer: Signer
    method: str
    confidence: float

    @property
    def degraded(self) -> bool:
        return self.method != MatchMethod.STABLE_KEY


@dataclass(frozen=True)
class DegradedResolution:
    field_name: str
    signer_key: str
    method: str
    confidence: float

    def to_dict(self) -> dict:
        return {
            "code": "degraded_resolution",
            "field": self.field_name,
            "signer_key": self.signer_key,
            "method": self.method,
            "confidence": self.confidence,
        }


@dataclass(frozen=True)
class ResolvedField:
    name: str
    kind: str
    signer_key: str
    method: str
    value: object
    geometry: dict


@dataclass
class ResolutionResult:
    fields: Dict[str, ResolvedField] = field(default_factory=dict)
    warnings: List[DegradedResolution] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return bool(self.warnings)

    def values(self) -> Dict[str, object]:
        return {name: f.value for name, f in self.fields.items()}


def _only(candidates: List[Signer]) -> Optional[Signer]:
    return candidates[0] if len(candidates) == 1 else None


def _by_stable_key(f: SchemaField, signers: Sequence[Signer]) -> Optional[Signer]:
    if not f.owner_signer_key:
        return None
    return _only([s for s in signers if s.signer_key == f.owner_signer_key])


def _by_contact_address(f: SchemaField, signers: Sequence[Signer]) -> Optional[Signer]:
    email = (f.signer_email or "").strip().lower()
    if not email:
        return None
    return _only([s for s in signers if (s.email or "").strip().lower() == email])


def _by_secondary_identifier(f: SchemaField, signers: Sequence[Signer]) -> Optional[Signer]:
    if not f.signer_ref:
        return None
    return _only([s for s in signers if s.external_ref and s.external_ref == f.signer_ref])


def _by_order_index(f: SchemaField, signers: Sequence[Signer]) -> Optional[Signer]:
    if f.order_index is None:
        return None
    return _only([s for s in signers if s.order_index == f.order_index])


def _by_lowest_signed(f: SchemaField, signers: Sequence[Signer]) -> Optional[Signer]:
    signed = [s for s in signers if s.status == SignerStatus.SIGNED]
    return signed[0] if signed else None


Strategy = Callable[[SchemaField, Sequence[Signer]], Optional[Signer]]

STRATEGIES: List[Tuple[str, float, Strategy]] = [
    (MatchMethod.STABLE_KEY, 1.0, _by_stable_key),
    (MatchMethod.CONTACT_ADDRESS, 0.8, _by_contact_address),
    (MatchMethod.SECONDARY_IDENTIFIER, 0.6, _by_secondary_identifier),
    (MatchMethod.ORDER_INDEX, 0.4, _by_order_index),
    (MatchMethod.LOWEST_SIGNED, 0.1, _by_lowest_signed),
]


def _ordered(signers: Sequence[Signer]) -> List[Signer]:
    return sorted(signers, key=lambda s: (s.order_index, s.id or 0, s.signer_key))


def resolve_owner(f: SchemaField, signers: Sequence[Signer]) -> Optional[Match]:
    ordered = _ordered(signers)
    for method, confidence, strategy in STRATEGIES:
        signer = strategy(f, ordered)
        if signer is not None:
            if method == MatchMethod.LOWEST_SIGNED:
                logger.warning(
                    "Field %s assigned to %s by last-resort match", f.name, signer.signer_key
                )
            return Match(signer=signer, method=method, confidence=confidence)
    return None


def _captured_at(captured: dict, signer: Signer) -> Optional[datetime]:
    raw = captured.get("captured_at") if captured else None
    if raw:
        try:
            return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
        except ValueError:
            pass
    return signer.signed_at


def derive_value(f: SchemaField, signer: Signer):
    """Rendered value of ``f`` from ``signer``'s captured values, or ``None``."""
    captured_values = load_json(signer.captured_values_json, {}) or {}
    captured = captured_values.get(f.name)
    raw = captured.get("value") if isinstance(captured, dict) else None

    if f.kind == FieldKind.DATE:
        if f.auto_fill_date:
            stamp = _captured_at(captured or {}, signer)
            return stamp.date().isoformat() if stamp else None
        if raw is None or str(raw).strip() == "":
            return None
        try:
            return date.fromisoformat(str(raw).strip()[:10]).isoformat()
        except ValueError:
            return None
    if raw is None:
        return None
    if f.kind == FieldKind.CHECKBOX:
        return bool(raw)
    if f.kind in FieldKind.IMAGE:
        return raw if isinstance(raw, str) and raw.strip() else None
    text = str(raw)
    return text if text.strip() else None


def resolve_fields(fields: Sequence[SchemaField], signers: Sequence[Signer]) -> ResolutionResult:
    """Resolve every field; raises ``MissingFieldData`` for unfillable required fields."""
    result = ResolutionResult()
    missing = []
    for f in sorted(fields, key=lambda item: item.name):
        match = resolve_owner(f, signers)
        if match is None:
            if f.required:
                missing.append(f.name)
            continue
        if match.degraded:
            result.warnings.append(DegradedResolution(
                field_name=f.name,
                signer_key=match.signer.signer_key,
                method=match.method,
                confidence=match.confidence,
            ))
        if match.signer.excused:
            # owner declined and the request continued without them
            result.skipped.append(f.name)
            continue
        value = derive_value(f, match.signer)
        if value is None:
            if f.required:
                missing.append(f.name)
            continue
        result.fields[f.name] = ResolvedField(
            name=f.name,
            kind=f.kind,
            signer_key=match.signer.signer_key,
            method=match.method,
            value=value,
            geometry=load_json(f.geometry_json, {}) or {},
        )
    if missing:
        raise MissingFieldData(missing)
    return result
