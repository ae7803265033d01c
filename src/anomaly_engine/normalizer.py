"""
Turns detector findings into canonical Anomaly records.
"""

import json
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from .models import NOT_SPECIFIED, Anomaly, DetectionType, RawFinding

DEFAULT_SEVERITY = "medium"
MESSAGE_TEMPLATE = "Anomaly detected for medicine ID: {medicine_id}"
DESCRIPTION_TEMPLATE = "General anomaly for medicine ID: {medicine_id}."


def normalize_details(details: Any, causes_of_shortages: Any = None) -> dict[str, Any]:
    """Coerce a finding's details into a dict and stamp the shortage cause.

    - mapping: shallow copy
    - text wrapped in braces: parsed as JSON, or kept under ``originalDetails``
      when it does not parse to an object
    - any other truthy value: kept under ``originalDetails``
    - empty / None: empty dict

    ``causesOfShortages`` is always present afterwards, ``"Not specified"``
    when the finding carries none.
    """
    normalized: dict[str, Any]

    if isinstance(details, Mapping):
        normalized = dict(details)
    elif isinstance(details, str) and _looks_like_object(details):
        try:
            parsed = json.loads(details)
        except ValueError:
            parsed = None
        normalized = parsed if isinstance(parsed, dict) else {"originalDetails": details}
    elif details:
        normalized = {"originalDetails": details}
    else:
        normalized = {}

    normalized["causesOfShortages"] = causes_of_shortages if causes_of_shortages else NOT_SPECIFIED
    return normalized


def _looks_like_object(text: str) -> bool:
    stripped = text.strip()
    return stripped.startswith("{") and stripped.endswith("}")


def _clamp_confidence(value: float | None) -> float:
    if value is None:
        return 0.0
    return min(1.0, max(0.0, float(value)))


def normalize_finding(
    detection_type: DetectionType | str,
    finding: RawFinding,
    now: datetime | None = None,
) -> Anomaly:
    """Build the canonical Anomaly for one finding. Pure apart from the clock.

    Args:
        detection_type: Which detector produced the finding
        finding: The raw detector output
        now: Timestamp override, defaults to the current UTC time

    Returns:
        A new Anomaly with status "active" and no review timestamp
    """
    detection = DetectionType(detection_type).value
    data_point = finding.data_point
    medicine_id = data_point.medicine_id if data_point is not None else None
    label = medicine_id if data_point is not None else "N/A"

    return Anomaly(
        detection_type=detection,
        severity=finding.severity or DEFAULT_SEVERITY,
        message=finding.message or MESSAGE_TEMPLATE.format(medicine_id=label),
        description=finding.description or DESCRIPTION_TEMPLATE.format(medicine_id=label),
        confidence=_clamp_confidence(finding.confidence),
        type=finding.type or detection,
        details=normalize_details(finding.details, finding.causes_of_shortages),
        medicine_data_id=medicine_id,
        disease=data_point.disease if data_point is not None else None,
        assigned_to=finding.assigned_to or "",
        status="active",
        timestamp=(now or datetime.now(UTC)).isoformat(),
        reviewed_at=None,
    )
