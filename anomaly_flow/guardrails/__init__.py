"""
Guardrails module for validating workflow definitions and run parameters.
"""

from anomaly_flow.guardrails.enforcement import (
    GuardrailViolation,
    filter_valid_workflows,
    validate_run_parameters,
    validate_workflow_definition,
)

__all__ = [
    "GuardrailViolation",
    "filter_valid_workflows",
    "validate_run_parameters",
    "validate_workflow_definition",
]
