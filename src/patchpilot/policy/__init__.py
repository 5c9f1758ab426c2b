"""Plan/patch compliance: risk scoring, path rules, required checks and schema validation."""

from patchpilot.policy.enforcer import PolicyEnforcer, SecurityPolicy, load_security_policy
from patchpilot.policy.schema_validator import PATCH_SCHEMA, PLAN_SCHEMA, SchemaValidator

__all__ = [
    "PATCH_SCHEMA",
    "PLAN_SCHEMA",
    "PolicyEnforcer",
    "SchemaValidator",
    "SecurityPolicy",
    "load_security_policy",
]
