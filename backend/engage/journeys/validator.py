# /engage/journeys/validator.py

"""
Pure validation functions for journey graphs built in the visual editor.

All functions are:
- Pure (no side effects)
- Deterministic (same input = same output)
- Free of database access and logging

They are run before a journey is saved or activated so that the executor
never meets a graph it cannot walk.
"""

from typing import Optional, TypedDict

from engage.journeys.executor import DELAY_UNITS_SECONDS
from engage.models.journey import Journey, JourneyNode

NODE_TYPES = ("trigger", "action", "delay", "wait", "condition", "experiment", "ab_test", "goal", "exit", "end")
ACTION_SUBTYPES = ("send_whatsapp", "add_tag", "update_property")


class ValidationResult(TypedDict):
    """Result of a validation check."""
    is_valid: bool
    error_code: Optional[str]
    message: Optional[str]


def _ok() -> ValidationResult:
    return {"is_valid": True, "error_code": None, "message": None}


def _error(code: str, message: str) -> ValidationResult:
    return {"is_valid": False, "error_code": code, "message": message}


def validate_node(node: JourneyNode) -> ValidationResult:
    """
    Check the configuration a single node needs before it can execute.

    Args:
        node: The node to validate

    Returns:
        ValidationResult describing the first problem found, if any
    """
    node_type = node.type.lower()
    if node_type not in NODE_TYPES:
        return _error("UNKNOWN_NODE_TYPE", f"Node '{node.id}' has unknown type '{node.type}'")

    if node_type == "action":
        if node.kind not in ACTION_SUBTYPES:
            return _error("UNKNOWN_ACTION", f"Action node '{node.id}' has unknown action '{node.kind}'")
        if node.kind == "send_whatsapp" and not (
            node.data.get("template") or node.data.get("templateName") or node.data.get("message")
        ):
            return _error("MISSING_MESSAGE", f"Node '{node.id}' needs a template or a message")

    if node_type in ("delay", "wait"):
        unit = node.data.get("unit")
        if unit and (str(unit).lower().rstrip("s") + "s") not in DELAY_UNITS_SECONDS:
            return _error("INVALID_DELAY_UNIT", f"Delay node '{node.id}' has unknown unit '{unit}'")

    if node_type in ("experiment", "ab_test") or node.kind in ("ab_test", "experiment", "split"):
        variants = node.data.get("variants") or []
        if len(variants) < 2:
            return _error("TOO_FEW_VARIANTS", f"Experiment node '{node.id}' needs at least two variants")
        ids = [str(v.get("id")) for v in variants]
        if len(set(ids)) != len(ids):
            return _error("DUPLICATE_VARIANT", f"Experiment node '{node.id}' repeats a variant id")

    return _ok()


def validate_journey(journey: Journey) -> ValidationResult:
    """
    Validate the structure of a whole journey graph.

    Checks, in order: exactly one trigger, unique node ids, per-node
    configuration, edges pointing at existing nodes, and that the trigger
    leads somewhere.
    """
    triggers = journey.trigger_nodes()
    if not triggers:
        return _error("MISSING_TRIGGER", "Journey needs a trigger node")
    if len(triggers) > 1:
        return _error("MULTIPLE_TRIGGERS", "Journey can only have one trigger node")

    node_ids = [node.id for node in journey.nodes]
    if len(set(node_ids)) != len(node_ids):
        return _error("DUPLICATE_NODE", "Node ids must be unique")

    for node in journey.nodes:
        result = validate_node(node)
        if not result["is_valid"]:
            return result

    known = set(node_ids)
    for edge in journey.edges:
        if edge.source not in known or edge.target not in known:
            return _error("DANGLING_EDGE", f"Edge '{edge.id}' connects a node that does not exist")
        if edge.target == triggers[0].id:
            return _error("EDGE_INTO_TRIGGER", f"Edge '{edge.id}' points back at the trigger")

    if journey.entry_node_id() is None:
        return _error("EMPTY_JOURNEY", "Journey has no steps after its trigger")

    return _ok()
