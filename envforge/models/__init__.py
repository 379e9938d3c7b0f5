"""envforge data models — all Pydantic v2, all frozen (immutable)."""

from envforge.models.activation import (
    ACTIVATED_STATES,
    VALID_TRANSITIONS,
    ActivationResult,
    ActivationState,
)
from envforge.models.environment import (
    DeclaredEnvironment,
    PackageReference,
    ResolvedEnvironment,
    StringValue,
    TemplateValue,
    Unset,
    VariableValue,
)
from envforge.models.packages import PackageRecipe, PackageRef, ResolvedPackage
from envforge.models.store import BuildStatus, ReservationStatus, StoreEntry

__all__ = [
    # packages
    "PackageRecipe",
    "PackageRef",
    "ResolvedPackage",
    # environment
    "StringValue",
    "PackageReference",
    "TemplateValue",
    "Unset",
    "VariableValue",
    "DeclaredEnvironment",
    "ResolvedEnvironment",
    # store
    "BuildStatus",
    "ReservationStatus",
    "StoreEntry",
    # activation
    "ActivationState",
    "ActivationResult",
    "VALID_TRANSITIONS",
    "ACTIVATED_STATES",
]
