"""
Grant condition evaluation.

Conditions are stored on a grant as a list of tagged objects, all of which
must hold for the grant to apply:

    {"kind": "time_window", "start": "09:00", "end": "17:00", "timezone": "UTC"}
    {"kind": "day_of_week", "days": ["monday", "tuesday"]}
    {"kind": "ip_range", "cidrs": ["192.168.1.0/24", "10.0.0.7"]}
    {"kind": "attribute", "key": "department", "values": ["billing"]}

Unrecognized or malformed conditions fail closed: an allow grant carrying one
does not apply, a deny grant carrying one still applies.
"""
import ipaddress
from datetime import datetime, time, timezone
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from chatbot_rbac.utils import get_logger, utcnow


log = get_logger(__name__)


KNOWN_KINDS = ("time_window", "day_of_week", "ip_range", "attribute")
DAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


def build_context(
    at: Optional[datetime] = None,
    ip_address: Optional[str] = None,
    attributes: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Runtime context for condition evaluation (``at`` is naive UTC)."""
    return {
        "at": at or utcnow(),
        "ip_address": ip_address,
        "attributes": dict(attributes or {}),
    }


def _local_moment(context: Dict[str, Any], tz_name: Optional[str]) -> datetime:
    moment: datetime = context.get("at") or utcnow()
    if not tz_name or tz_name.upper() == "UTC":
        return moment
    return moment.replace(tzinfo=timezone.utc).astimezone(ZoneInfo(tz_name))


def _parse_hhmm(value: str) -> time:
    return datetime.strptime(value, "%H:%M").time()


def evaluate_condition(condition: Dict[str, Any], context: Dict[str, Any]) -> Optional[bool]:
    """
    Evaluate a single condition.

    Returns True/False for a recognized condition, None when the condition
    cannot be interpreted.
    """
    if not isinstance(condition, dict):
        return None
    kind = condition.get("kind")

    try:
        if kind == "time_window":
            start = _parse_hhmm(condition["start"])
            end = _parse_hhmm(condition["end"])
            current = _local_moment(context, condition.get("timezone")).time().replace(tzinfo=None)
            if start <= end:
                return start <= current < end
            # Window crosses midnight, e.g. 22:00-06:00
            return current >= start or current < end

        if kind == "day_of_week":
            days = [day.lower() for day in condition["days"]]
            current_day = DAYS[_local_moment(context, condition.get("timezone")).weekday()]
            return current_day in days

        if kind == "ip_range":
            ip_address = context.get("ip_address")
            if not ip_address:
                return False
            address = ipaddress.ip_address(ip_address)
            for cidr in condition["cidrs"]:
                if address in ipaddress.ip_network(cidr, strict=False):
                    return True
            return False

        if kind == "attribute":
            attributes = context.get("attributes") or {}
            key = condition["key"]
            if key not in attributes:
                return False
            return attributes[key] in condition["values"]
    except (KeyError, TypeError, ValueError, ZoneInfoNotFoundError) as e:
        log.warning(f"Malformed {kind} condition {condition}: {e}")
        return None

    log.warning(f"Unknown condition kind: {kind!r}")
    return None


def grant_applies(
    is_granted: bool,
    conditions: Optional[List[Dict[str, Any]]],
    context: Dict[str, Any],
) -> bool:
    """
    Decide whether a grant takes part in a decision.

    Every condition must be satisfied. An uninterpretable condition makes an
    allow grant inapplicable and is ignored on a deny grant.
    """
    if not conditions:
        return True

    for condition in conditions:
        result = evaluate_condition(condition, context)
        if result is None:
            if is_granted:
                return False
            continue
        if not result:
            log.debug(f"Condition not met: {condition}")
            return False
    return True


def scope_context_satisfied(scope_context: Optional[Dict[str, Any]], context: Dict[str, Any]) -> bool:
    """An assignment's scope_context holds when every key matches the check attributes."""
    if not scope_context:
        return True
    attributes = context.get("attributes") or {}
    return all(attributes.get(key) == value for key, value in scope_context.items())
