"""
Shop Floor Update Ingestion — Status Summaries

Compact, JSON-ready views of the current records. These are the payloads
handed to whatever produces natural-language reports; that step itself is
not part of this package.
"""
from __future__ import annotations
import logging
from collections import Counter
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Optional

from models import (
    EntityKind, Machine, MachineStatus, Order, OrderPriority, OrderStage,
    OrderStatus, SafetyArea, SafetyLog, SafetyStatus,
)

logger = logging.getLogger(__name__)

RECENT_LOG_COUNT = 10


def _count_by(values: Iterable[Enum], enum_cls: type[Enum]) -> dict[str, int]:
    """Counts for every member of ``enum_cls``, zeros included."""
    counts = Counter(v.value if isinstance(v, Enum) else v for v in values)
    return {m.value: counts.get(m.value, 0) for m in enum_cls}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()

# ============================================================
# Per-Kind Summaries
# ============================================================

def summarize_machines(machines: list[Machine]) -> dict[str, Any]:
    in_error = [m for m in machines if m.status == MachineStatus.ERROR]
    return {
        "machines": [machine_status_snapshot(m) for m in machines],
        "statistics": {
            "total_machines": len(machines),
            "by_status": _count_by((m.status for m in machines), MachineStatus),
            "total_output": sum(m.output for m in machines),
            "errors": [
                {"machine_id": m.machine_id, "error_message": m.error_message}
                for m in in_error
            ],
        },
        "last_updated": _now_iso(),
    }


def summarize_safety(areas: list[SafetyArea], logs: list[SafetyLog]) -> dict[str, Any]:
    """``logs`` is expected newest first."""
    return {
        "areas": [a.model_dump(mode="json") for a in areas],
        "logs": [l.model_dump(mode="json") for l in logs[:RECENT_LOG_COUNT]],
        "statistics": {
            "total_areas": len(areas),
            "by_status": _count_by((a.status for a in areas), SafetyStatus),
            "recent_logs_count": len(logs),
        },
        "last_updated": _now_iso(),
    }


def summarize_orders(orders: list[Order]) -> dict[str, Any]:
    return {
        "orders": [o.model_dump(mode="json") for o in orders],
        "statistics": {
            "total_orders": len(orders),
            "by_status": _count_by((o.status for o in orders), OrderStatus),
            "by_stage": _count_by((o.stage for o in orders), OrderStage),
            "by_priority": _count_by((o.priority for o in orders), OrderPriority),
        },
        "last_updated": _now_iso(),
    }

# ============================================================
# Machine Views
# ============================================================

def machine_status_snapshot(machine: Machine) -> dict[str, Any]:
    """Compact view; error_message and operator only appear when set."""
    snapshot = {
        "machine_id": machine.machine_id,
        "name": machine.name,
        "status": machine.status.value,
        "output": machine.output,
        "last_updated": machine.last_updated.isoformat(),
    }
    if machine.error_message:
        snapshot["error_message"] = machine.error_message
    if machine.operator:
        snapshot["operator"] = machine.operator
    return snapshot


def format_machine_status(machines: Optional[list[Machine]]) -> str:
    if not machines:
        return "No machine data available."

    lines = ["Current Shop Floor Status:", ""]
    for m in machines:
        lines.append(f"Machine {m.machine_id} ({m.name}):")
        lines.append(f"  - Status: {m.status.value}")
        lines.append(f"  - Output: {m.output} units")
        lines.append(f"  - Last Updated: {m.last_updated.isoformat()}")
        if m.error_message:
            lines.append(f"  - Error: {m.error_message}")
        if m.operator:
            lines.append(f"  - Operator: {m.operator}")
        lines.append("")
    return "\n".join(lines)

# ============================================================
# Combined Report
# ============================================================

async def build_status_report(repo, safety_log_limit: int = 100) -> dict[str, Any]:
    """Machines, safety and orders in one payload, read from ``repo``."""
    machines = await repo.list_records(EntityKind.MACHINE)
    areas = await repo.list_records(EntityKind.SAFETY_AREA)
    orders = await repo.list_records(EntityKind.ORDER)
    logs = await repo.list_safety_logs(limit=safety_log_limit)

    logger.info(
        f"Status report: {len(machines)} machines, {len(areas)} areas, {len(orders)} orders")
    return {
        "machines": summarize_machines(machines),
        "safety": summarize_safety(areas, logs),
        "orders": summarize_orders(orders),
        "generated_at": _now_iso(),
    }
