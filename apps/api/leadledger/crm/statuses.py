from __future__ import annotations

from enum import StrEnum

from leadledger.errors import ValidationError


class LeadStatus(StrEnum):
    NEW = "new"
    CONTACTED = "contacted"
    INTERESTED = "interested"
    CONVERTED = "converted"
    REJECTED = "rejected"
    NOT_PICKED_UP = "not-picked-up"
    BUSY = "busy"
    WRONG_NUMBER = "wrong-number"
    FOLLOW_UP = "follow-up"


class SaleStatus(StrEnum):
    COMPLETED = "completed"
    PENDING = "pending"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


# Older rows and uploaded sheets use these spellings for a converted lead.
CONVERTED_SYNONYMS = frozenset({"paid", "sale"})
CONVERTED_SPELLINGS = frozenset({LeadStatus.CONVERTED.value, *CONVERTED_SYNONYMS})

_LEAD_STATUS_ALIASES: dict[str, LeadStatus] = {
    **{status.value: status for status in LeadStatus},
    **{synonym: LeadStatus.CONVERTED for synonym in CONVERTED_SYNONYMS},
    "notpickedup": LeadStatus.NOT_PICKED_UP,
    "followup": LeadStatus.FOLLOW_UP,
    "wrongnumber": LeadStatus.WRONG_NUMBER,
}


def _canonical_key(value: str) -> str:
    return "-".join(value.strip().lower().replace("_", " ").split())


def normalize_lead_status(value: str | LeadStatus) -> LeadStatus:
    key = _canonical_key(str(value))
    status = _LEAD_STATUS_ALIASES.get(key)
    if status is None:
        raise ValidationError(
            f"unrecognized lead status '{value}'",
            details={"allowed": [item.value for item in LeadStatus]},
        )
    return status


def is_converted(value: str | None) -> bool:
    if value is None:
        return False
    return _canonical_key(value) in CONVERTED_SPELLINGS


def normalize_sale_status(value: str) -> SaleStatus:
    try:
        return SaleStatus(value.strip().lower())
    except ValueError as exc:
        raise ValidationError(
            f"unrecognized sale status '{value}'",
            details={"allowed": [item.value for item in SaleStatus]},
        ) from exc
