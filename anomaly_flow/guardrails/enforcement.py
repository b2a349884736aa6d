"""
Guardrail enforcement for workflow definitions and run parameters.
Definitions are checked when loaded, so graph errors surface before a run
starts instead of halfway through one.
"""

import logging
from typing import Any, Iterable, Optional

from anomaly_flow.definitions import EdgeCondition, NodeType, WorkflowDefinition

logger = logging.getLogger(__name__)

KNOWN_CONDITIONS = {condition.value for condition in EdgeCondition}

# Variables written by stages; callers may not seed them
RESERVED_VARIABLES = {
    "dataCompleteness",
    "confidence",
    "decision",
    "humanDecision",
    "report",
    "reportGenerated",
    "verificationStatus",
}

THRESHOLD_KEYS = ("auto_approve_threshold", "human_review_threshold", "escalate_threshold")


class GuardrailViolation(Exception):
    """Exception raised when a guardrail check fails."""

    def __init__(self, message: str, violation_type: str):
        self.message = message
        self.violation_type = violation_type
        super().__init__(self.message)


def _find_cycle(workflow: WorkflowDefinition) -> Optional[list[str]]:
    adjacency: dict[str, list[str]] = {node.id: [] for node in workflow.nodes}
    for edge in workflow.edges:
        adjacency.setdefault(edge.source, []).append(edge.target)

    visiting: list[str] = []
    done: set[str] = set()

    def visit(node_id: str) -> Optional[list[str]]:
        if node_id in visiting:
            return visiting[visiting.index(node_id):] + [node_id]
        if node_id in done:
            return None
        visiting.append(node_id)
        for target in adjacency.get(node_id, []):
            cycle = visit(target)
            if cycle:
                return cycle
        visiting.pop()
        done.add(node_id)
        return None

    for node_id in adjacency:
        cycle = visit(node_id)
        if cycle:
            return cycle
    return None


def _check_threshold(node_id: str, key: str, value: Any) -> None:
    if not isinstance(value, (int, float)) or isinstance(value, bool) or not 0.0 <= value <= 1.0:
        raise GuardrailViolation(
            f"Node '{node_id}' has invalid {key}: {value!r}. Must be a number between 0 and 1.",
            violation_type="invalid_node_config",
        )


def _check_node_config(workflow: WorkflowDefinition) -> None:
    for node in workflow.nodes:
        config = node.config

        if node.type == NodeType.DECISION:
            for key in THRESHOLD_KEYS:
                if key in config:
                    _check_threshold(node.id, key, config[key])

        elif node.type == NodeType.VERIFICATION:
            required = config.get("required_sources", 0)
            if not isinstance(required, int) or isinstance(required, bool) or required < 0:
                raise GuardrailViolation(
                    f"Node '{node.id}' has invalid required_sources: {required!r}",
                    violation_type="invalid_node_config",
                )

        elif node.type == NodeType.HUMAN_GATE:
            timeout = config.get("timeout_seconds", 0)
            if not isinstance(timeout, (int, float)) or isinstance(timeout, bool) or timeout < 0:
                raise GuardrailViolation(
                    f"Node '{node.id}' has invalid timeout_seconds: {timeout!r}",
                    violation_type="invalid_node_config",
                )


def validate_workflow_definition(workflow: WorkflowDefinition) -> None:
    """
    Check the structural integrity of a workflow graph.

    - Node ids are unique and the entry node exists
    - Every edge joins two existing nodes
    - Every edge condition is a known predicate
    - The graph has no cycles
    - Every node except delivery has an outgoing edge, and delivery has none
    - Stage configs are in range

    Args:
        workflow: Definition to check

    Raises:
        GuardrailViolation: On the first problem found
    """
    if not workflow.nodes:
        raise GuardrailViolation(
            f"Workflow '{workflow.name}' has no nodes",
            violation_type="invalid_workflow",
        )

    node_ids = [node.id for node in workflow.nodes]
    duplicates = sorted({node_id for node_id in node_ids if node_ids.count(node_id) > 1})
    if duplicates:
        raise GuardrailViolation(
            f"Duplicate node ids: {', '.join(duplicates)}",
            violation_type="duplicate_node",
        )

    known = set(node_ids)
    if workflow.entry_node not in known:
        raise GuardrailViolation(
            f"Entry node '{workflow.entry_node}' does not exist",
            violation_type="unknown_node",
        )

    for edge in workflow.edges:
        for endpoint in (edge.source, edge.target):
            if endpoint not in known:
                raise GuardrailViolation(
                    f"Edge {edge.source} -> {edge.target} references unknown node '{endpoint}'",
                    violation_type="unknown_node",
                )
        if edge.condition is not None and edge.condition not in KNOWN_CONDITIONS:
            raise GuardrailViolation(
                f"Edge {edge.source} -> {edge.target} has unknown condition '{edge.condition}'. "
                f"Known conditions: {', '.join(sorted(KNOWN_CONDITIONS))}",
                violation_type="unknown_condition",
            )

    cycle = _find_cycle(workflow)
    if cycle:
        raise GuardrailViolation(
            f"Workflow contains a cycle: {' -> '.join(cycle)}",
            violation_type="cycle_detected",
        )

    for node in workflow.nodes:
        outgoing = workflow.outgoing(node.id)
        if node.type == NodeType.DELIVERY and outgoing:
            raise GuardrailViolation(
                f"Delivery node '{node.id}' ends the run and cannot have outgoing edges",
                violation_type="invalid_workflow",
            )
        if node.type != NodeType.DELIVERY and not outgoing:
            raise GuardrailViolation(
                f"Node '{node.id}' is not a delivery node and has no outgoing edges",
                violation_type="dead_end",
            )

    _check_node_config(workflow)


def validate_run_parameters(parameters: dict) -> None:
    """
    Validate per-run variable overrides.

    Args:
        parameters: Variables merged over the workflow defaults

    Raises:
        GuardrailViolation: If validation fails
    """
    if not isinstance(parameters, dict):
        raise GuardrailViolation(
            "Run parameters must be a mapping of variable names to values",
            violation_type="invalid_workflow_input",
        )

    reserved = sorted(RESERVED_VARIABLES & set(parameters))
    if reserved:
        raise GuardrailViolation(
            f"Run parameters cannot set stage outputs: {', '.join(reserved)}",
            violation_type="invalid_workflow_input",
        )

    for key in ("autonomousMode", "escalationEnabled"):
        if key in parameters and not isinstance(parameters[key], bool):
            raise GuardrailViolation(
                f"Run parameter '{key}' must be a boolean",
                violation_type="invalid_workflow_input",
            )

    if "confidenceThreshold" in parameters:
        value = parameters["confidenceThreshold"]
        if not isinstance(value, (int, float)) or isinstance(value, bool) or not 0.0 <= value <= 1.0:
            raise GuardrailViolation(
                f"Invalid confidenceThreshold: {value!r}. Must be between 0 and 1.",
                violation_type="invalid_workflow_input",
            )


def filter_valid_workflows(workflows: Iterable[WorkflowDefinition]) -> list[WorkflowDefinition]:
    """Drop definitions that fail validation, logging why."""
    valid = []
    for workflow in workflows:
        try:
            validate_workflow_definition(workflow)
        except GuardrailViolation as e:
            logger.error(f"Skipping workflow {workflow.id} ({workflow.name}): {e.message}")
            continue
        valid.append(workflow)
    return valid
