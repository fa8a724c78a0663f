"""Plan verifier - validation gates, parcel cross-checks and the override workflow."""
from .compare import as_number, normalize_text, relative_deviation
from .gates import GateSet, apply_gates, evaluate_gates
from .parcel import cross_check_with_parcel
from .overrides import apply_overrides, confirm_all, scale_to_total_units

__all__ = [
    "as_number",
    "relative_deviation",
    "normalize_text",
    "GateSet",
    "apply_gates",
    "evaluate_gates",
    "cross_check_with_parcel",
    "apply_overrides",
    "confirm_all",
    "scale_to_total_units",
]
