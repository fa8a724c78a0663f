"""Validation gate engine.

Each gate compares one extracted field against city parcel data (PLUTO)
and against the AI-derived value, and lands in one of PASS, WARN,
NEEDS_OVERRIDE or CONFLICTING. Evaluation is a pure function of the
snapshot; manual overrides and "confirm all" are read from the snapshot
itself, so re-running the engine after any transform re-derives the whole
gate set.
"""
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from extraction.config import gate_config
from schemas.enums import EvidenceSource, GateStatus
from schemas.plan_data import Evidence, ExtractedField
from schemas.snapshot import ExpectedRange, ExtractionSnapshot, ParcelData, ValidationGate

from .compare import as_number, get_tolerance_for_field, relative_deviation

logger = logging.getLogger(__name__)

TOTAL_UNITS = "total_units"
FAR = "far"
LOT_AREA = "lot_area"
ZONING_FLOOR_AREA = "zoning_floor_area"
BUILDING_AREA = "building_area"
UNIT_COUNT_REDUNDANCY = "unit_count_redundancy"

GATE_FIELDS = [TOTAL_UNITS, FAR, LOT_AREA, ZONING_FLOOR_AREA, BUILDING_AREA]

# Override field that pins each gate
OVERRIDE_FOR_GATE = {
    TOTAL_UNITS: "total_units",
    FAR: "resid_far",
    LOT_AREA: "lot_area",
    ZONING_FLOOR_AREA: "zoning_floor_area",
    BUILDING_AREA: "building_area",
}

OVERRIDDEN_MESSAGE = "manually overridden"
CONFIRMED_MESSAGE = "confirmed by user"

# Qualifying affordable FAR by residential district (bonus ceiling for the FAR gate)
ZONE_AFFORDABLE_FAR = {
    "R6": 3.90, "R6A": 3.90, "R6-1": 3.90, "R6B": 2.40, "R6D": 3.00, "R6-2": 3.00,
    "R7A": 5.01, "R7-1": 5.01, "R7-2": 5.01, "R7D": 5.60, "R7X": 6.00, "R7-3": 6.00,
    "R8": 7.20, "R8A": 7.20, "R8X": 7.20, "R8B": 4.80,
    "R9": 9.02, "R9A": 9.02, "R9D": 10.80, "R9X": 10.80, "R9-1": 10.80,
    "R10": 12.00, "R10A": 12.00, "R10X": 12.00,
    "R11": 15.00, "R12": 18.00,
}


@dataclass
class GateSet:
    """Result of one gate evaluation cycle."""
    gates: List[ValidationGate] = field(default_factory=list)
    passed_all: bool = True
    needs_manual_fields: List[str] = field(default_factory=list)

    def get(self, name: str) -> Optional[ValidationGate]:
        for g in self.gates:
            if g.field == name:
                return g
        return None


def affordable_far_ceiling(zone: Optional[str]) -> Optional[float]:
    """Qualifying affordable FAR for a district such as 'R7A' or 'C4-4/R7A'."""
    if not zone:
        return None
    for part in re.split(r"[/,\s]+", zone.upper()):
        if part in ZONE_AFFORDABLE_FAR:
            return ZONE_AFFORDABLE_FAR[part]
    return None


# ============================================================================
# Value collection
# ============================================================================

def rule_based_values(snapshot: ExtractionSnapshot) -> Dict[str, Optional[float]]:
    """Rule-based value of each gated field (unit records first, then zoning text)."""
    zoning = snapshot.zoning
    units = len(snapshot.unit_records) or as_number(zoning.value_of("total_units"))
    far = as_number(zoning.value_of("far"))
    if far is None and snapshot.far is not None:
        far = snapshot.far.proposed_far
    return {
        TOTAL_UNITS: units or None,
        FAR: far,
        LOT_AREA: as_number(zoning.value_of("lot_area")),
        ZONING_FLOOR_AREA: as_number(zoning.value_of("zoning_floor_area")),
        BUILDING_AREA: as_number(zoning.value_of("building_area")),
    }


def ai_values(snapshot: ExtractionSnapshot) -> Dict[str, Optional[float]]:
    ai = snapshot.ai_extraction
    if ai is None:
        return {}
    return {
        TOTAL_UNITS: as_number(ai.totals.total_units),
        FAR: ai.zoning.far,
        LOT_AREA: ai.zoning.lot_area_sf,
        ZONING_FLOOR_AREA: ai.zoning.zoning_floor_area_sf,
        BUILDING_AREA: ai.building.building_area_sf,
    }


def implied_unit_range(lot_area: float, far: float, unit_yield: Dict[str, Any]) -> Tuple[int, int]:
    """(min, max) dwelling units a lot can yield at a FAR.

    Usable floor area is lot x FAR x efficiency; the max divides it by the
    smallest average unit, the min by the largest.
    """
    usable = lot_area * far * unit_yield["efficiency"]
    implied_max = math.ceil(usable / unit_yield["avg_unit_sf_max_density"])
    implied_min = max(1, math.floor(usable / unit_yield["avg_unit_sf_min_density"]))
    return implied_min, implied_max


def _field_evidence(extracted: Optional[ExtractedField]) -> List[Evidence]:
    if extracted is None:
        return []
    try:
        source = EvidenceSource(extracted.source)
    except ValueError:
        source = EvidenceSource.REGEX
    return [Evidence(
        page=extracted.page_number if extracted.page_number is not None else -1,
        snippet=f"{extracted.value}",
        source_type=source,
        confidence=extracted.confidence,
    )]


def _fmt(value: Optional[float]) -> str:
    if value is None:
        return "n/a"
    if float(value).is_integer():
        return f"{int(value):,}"
    return f"{value:,.2f}"


# ============================================================================
# Per-field parcel checks
# ============================================================================

def _banded(
    name: str,
    label: str,
    value: float,
    expected: float,
    tol: Dict[str, float],
    basis: str,
    hard: GateStatus = GateStatus.NEEDS_OVERRIDE,
) -> ValidationGate:
    deviation = relative_deviation(value, expected)
    pct = f"{deviation * 100:.0f}%"
    if deviation <= tol["pass_pct"]:
        status = GateStatus.PASS
        message = f"Extracted {label} {_fmt(value)} matches expected {_fmt(expected)}"
    elif deviation <= tol["warn_pct"]:
        status = GateStatus.WARN
        message = f"Extracted {label} {_fmt(value)} differs by {pct} from expected {_fmt(expected)}"
    else:
        status = hard
        message = f"Extracted {label} {_fmt(value)} deviates {pct} from expected {_fmt(expected)}"
    return ValidationGate(
        field=name,
        status=status,
        extracted_value=value,
        expected_range=ExpectedRange(min=expected * (1 - tol["warn_pct"]), max=expected * (1 + tol["warn_pct"])),
        city_basis=basis,
        message=message,
    )


def _units_gate(units: float, lot: float, far: float, unit_yield: Dict[str, Any]) -> ValidationGate:
    implied_min, implied_max = implied_unit_range(lot, far, unit_yield)
    ceiling = math.ceil(implied_max * unit_yield["override_high_ratio"])
    floor = max(1, math.floor(implied_min * unit_yield["override_low_ratio"]))
    basis = f"PLUTO lot area {_fmt(lot)} SF, resid FAR {far:g}"

    status = GateStatus.PASS
    message = f"Unit count {_fmt(units)} is within expected range ({floor}-{ceiling})"
    if units > ceiling:
        status = GateStatus.NEEDS_OVERRIDE
        message = (
            f"Extracted unit count ({_fmt(units)}) exceeds {unit_yield['override_high_ratio']:.0%} "
            f"of city-data implied maximum ({implied_max}). Lot: {_fmt(lot)} SF, FAR: {far:g}"
        )
    elif units < floor:
        status = GateStatus.NEEDS_OVERRIDE
        message = (
            f"Extracted unit count ({_fmt(units)}) is below {unit_yield['override_low_ratio']:.0%} "
            f"of city-data implied minimum ({implied_min}). Lot: {_fmt(lot)} SF, FAR: {far:g}"
        )
    elif units > implied_max * unit_yield["warn_high_ratio"] or units < implied_min * unit_yield["warn_low_ratio"]:
        status = GateStatus.WARN
        message = f"Unit count {_fmt(units)} is borderline. City data implies {implied_min}-{implied_max} units."

    return ValidationGate(
        field=TOTAL_UNITS,
        status=status,
        extracted_value=int(units),
        expected_range=ExpectedRange(min=floor, max=ceiling),
        city_basis=basis,
        message=message,
    )


def _far_gate(
    far: float,
    resid_far: float,
    zone: Optional[str],
    tol: Dict[str, float],
    max_far: Optional[float] = None,
) -> ValidationGate:
    deviation = relative_deviation(far, resid_far)
    zone_ceiling = max_far or affordable_far_ceiling(zone)
    max_legal = zone_ceiling if zone_ceiling is not None else resid_far * tol.get("bonus_multiplier", 1.5)
    basis = f"PLUTO resid FAR {resid_far:.2f}"
    if zone_ceiling is not None:
        basis += f", zone {zone} max affordable FAR {max_legal:.2f}"

    pct = f"{deviation * 100:.0f}%"
    if deviation <= tol["pass_pct"]:
        status = GateStatus.PASS
        message = f"Extracted FAR {far:.2f} matches PLUTO FAR {resid_far:.2f}"
    elif deviation <= tol["warn_pct"]:
        status = GateStatus.WARN
        message = f"Extracted FAR {far:.2f} is within {tol['warn_pct']:.0%} of PLUTO FAR {resid_far:.2f}"
    elif far <= max_legal:
        status = GateStatus.WARN
        message = (
            f"Extracted FAR {far:.2f} deviates {pct} from PLUTO FAR {resid_far:.2f}, "
            f"but within affordable bonus FAR ({max_legal:.2f})"
        )
    else:
        status = GateStatus.NEEDS_OVERRIDE
        message = (
            f"Extracted FAR {far:.2f} deviates {pct} from PLUTO FAR {resid_far:.2f} "
            f"and exceeds max legal FAR ({max_legal:.2f})"
        )
    return ValidationGate(
        field=FAR,
        status=status,
        extracted_value=far,
        expected_range=ExpectedRange(min=resid_far * (1 - tol["warn_pct"]), max=max_legal),
        city_basis=basis,
        message=message,
    )


def _redundancy_gate(snapshot: ExtractionSnapshot, resolved: int, cfg: Dict[str, Any]) -> Optional[ValidationGate]:
    mentions = snapshot.unit_count_mentions
    values = [m.value for m in mentions]
    if len(set(values)) < 2:
        return None

    tolerance = cfg["tolerance"]
    agreeing = sum(1 for v in values if abs(v - resolved) <= tolerance)
    disagreeing = [m for m in mentions if abs(m.value - resolved) > tolerance]
    if not disagreeing:
        return None

    max_disagree = max(m.value for m in disagreeing)
    variance = abs(max_disagree - resolved) / resolved if resolved > 0 else 1.0
    distinct = sorted({m.value for m in disagreeing})

    status = GateStatus.WARN
    message = (
        f"{agreeing}/{len(values)} sources agree on ~{resolved} units; "
        f"{len(disagreeing)} disagree ({', '.join(str(v) for v in distinct)})"
    )
    ai_disagrees = any(m.source_type == EvidenceSource.AI for m in disagreeing)
    if ai_disagrees and variance > cfg["conflict_pct"] and agreeing < 2:
        status = GateStatus.CONFLICTING
        unique = sorted(set(values))
        message = (
            f"Significant conflict: sources report {', '.join(str(v) for v in unique)} units. "
            f"Only {agreeing} source(s) agree on {resolved}."
        )

    return ValidationGate(
        field=UNIT_COUNT_REDUNDANCY,
        status=status,
        extracted_value=resolved,
        expected_range=ExpectedRange(min=min(values), max=max(values)),
        city_basis=f"{len(values)} mentions found across PDF ({snapshot.redundancy_score:.2f} redundancy score)",
        message=message,
        evidence=[
            Evidence(page=m.page, snippet=m.snippet, source_type=m.source_type, confidence=m.confidence)
            for m in disagreeing
        ],
    )


# ============================================================================
# Evaluation
# ============================================================================

def _apply_ai_check(
    gate: Optional[ValidationGate],
    name: str,
    rule: Optional[float],
    ai: Optional[float],
    tol: Dict[str, float],
) -> Optional[ValidationGate]:
    """Fold the rule-vs-AI comparison into a field's gate.

    CONFLICTING overrides any parcel status. A moderate disagreement only
    produces WARN when no parcel expectation exists for the field and the
    values differ by more than the absolute slack.
    """
    if ai is not None and gate is not None:
        gate = gate.model_copy(update={"ai_value": ai})
    if rule is None or ai is None:
        return gate

    deviation = relative_deviation(ai, rule)
    within_slack = abs(ai - rule) <= tol.get("absolute", 0)

    if deviation > tol["conflict_pct"]:
        message = f"Rule-based {_fmt(rule)} and AI {_fmt(ai)} disagree by {deviation * 100:.0f}%"
        if gate is None:
            return ValidationGate(field=name, status=GateStatus.CONFLICTING, extracted_value=rule, ai_value=ai, message=message)
        return gate.model_copy(update={"status": GateStatus.CONFLICTING, "message": f"{message}; {gate.message}"})

    if gate is None and not within_slack and deviation > tol["pass_pct"]:
        return ValidationGate(
            field=name,
            status=GateStatus.WARN,
            extracted_value=rule,
            ai_value=ai,
            message=f"Rule-based {_fmt(rule)} and AI {_fmt(ai)} differ by {deviation * 100:.0f}%",
        )
    return gate


def evaluate_gates(
    snapshot: ExtractionSnapshot,
    parcel: Optional[ParcelData] = None,
    zone: Optional[str] = None,
    config: Optional[Dict[str, Any]] = None,
) -> GateSet:
    """
    Evaluate every validation gate for a snapshot.

    Args:
        snapshot: Extraction snapshot (overrides and confirmation are read from it)
        parcel: City parcel values; defaults to the parcel stored on the snapshot
        zone: Zoning district for the affordable FAR ceiling; defaults to the extracted zone
        config: Pipeline config (defaults to the bundled YAML)

    Returns:
        GateSet with the gates in field order
    """
    cfg = gate_config(config)
    tolerances = cfg["tolerances"]
    categories = cfg["tolerance_categories"]
    parcel = parcel or snapshot.parcel
    pinned = snapshot.manual_overrides.pinned()
    zone = zone or pinned.get("zone_district") or snapshot.zoning.value_of("zone_district")

    rule = rule_based_values(snapshot)
    ai = ai_values(snapshot)

    lot = pinned.get("lot_area") or (parcel.lot_area if parcel and parcel.lot_area > 0 else None)
    resid_far = pinned.get("resid_far") or (parcel.resid_far if parcel and parcel.resid_far > 0 else None)

    gates: Dict[str, ValidationGate] = {}

    units = rule[TOTAL_UNITS]
    if units is not None and lot and resid_far:
        gates[TOTAL_UNITS] = _units_gate(units, lot, resid_far, cfg["unit_yield"])

    if rule[FAR] is not None and parcel and parcel.resid_far > 0:
        tol = get_tolerance_for_field(FAR, tolerances, categories)
        gates[FAR] = _far_gate(rule[FAR], parcel.resid_far, zone, tol, pinned.get("max_far"))

    if rule[LOT_AREA] is not None and parcel and parcel.lot_area > 0:
        tol = get_tolerance_for_field(LOT_AREA, tolerances, categories)
        gates[LOT_AREA] = _banded(LOT_AREA, "lot area", rule[LOT_AREA], parcel.lot_area, tol,
                                  f"PLUTO lot area {_fmt(parcel.lot_area)} SF")

    if rule[ZONING_FLOOR_AREA] is not None and lot and resid_far:
        tol = get_tolerance_for_field(ZONING_FLOOR_AREA, tolerances, categories)
        gates[ZONING_FLOOR_AREA] = _banded(
            ZONING_FLOOR_AREA, "zoning floor area", rule[ZONING_FLOOR_AREA], lot * resid_far, tol,
            f"lot area {_fmt(lot)} SF x FAR {resid_far:g}",
        )

    if rule[BUILDING_AREA] is not None and parcel and parcel.bldg_area > 0:
        tol = get_tolerance_for_field(BUILDING_AREA, tolerances, categories)
        gates[BUILDING_AREA] = _banded(
            BUILDING_AREA, "building area", rule[BUILDING_AREA], parcel.bldg_area, tol,
            f"PLUTO building area {_fmt(parcel.bldg_area)} SF (existing)", hard=GateStatus.WARN,
        )

    for name in cfg["required_fields"]:
        if name not in gates and rule.get(name) is None and ai.get(name) is None:
            gates[name] = ValidationGate(
                field=name,
                status=GateStatus.NEEDS_OVERRIDE,
                message=f"No {name.replace('_', ' ')} found in the plans; enter a value",
            )

    for name in GATE_FIELDS:
        tol = get_tolerance_for_field(name, tolerances, categories)
        updated = _apply_ai_check(gates.get(name), name, rule[name], ai.get(name), tol)
        if updated is not None:
            gates[name] = updated

    for name in GATE_FIELDS:
        gate = gates.get(name)
        if gate is not None and gate.status == GateStatus.PASS and gate.ai_value is None and ai.get(name) is not None:
            gates[name] = gate.model_copy(update={"ai_value": ai[name]})

    zoning_field = {
        FAR: snapshot.zoning.far,
        LOT_AREA: snapshot.zoning.lot_area,
        ZONING_FLOOR_AREA: snapshot.zoning.zoning_floor_area,
        BUILDING_AREA: snapshot.zoning.building_area,
        TOTAL_UNITS: snapshot.zoning.total_units,
    }
    for name, gate in list(gates.items()):
        if not gate.evidence:
            gates[name] = gate.model_copy(update={"evidence": _field_evidence(zoning_field.get(name))})

    ordered = [gates[n] for n in GATE_FIELDS if n in gates]
    resolved = int(units) if units else 0
    redundancy = _redundancy_gate(snapshot, resolved, cfg["redundancy"])
    if redundancy is not None:
        ordered.append(redundancy)

    final = []
    for gate in ordered:
        override_key = OVERRIDE_FOR_GATE.get(gate.field)
        if gate.field == UNIT_COUNT_REDUNDANCY:
            override_key = "total_units"
        if override_key in pinned:
            gate = gate.model_copy(update={
                "status": GateStatus.PASS,
                "extracted_value": pinned[override_key],
                "message": OVERRIDDEN_MESSAGE,
            })
        elif snapshot.confirmed_all and gate.status in (GateStatus.WARN, GateStatus.NEEDS_OVERRIDE):
            gate = gate.model_copy(update={"status": GateStatus.PASS, "message": CONFIRMED_MESSAGE})
        final.append(gate)

    needs_manual = []
    for gate in final:
        if gate.status in (GateStatus.NEEDS_OVERRIDE, GateStatus.CONFLICTING):
            name = TOTAL_UNITS if gate.field == UNIT_COUNT_REDUNDANCY else gate.field
            if name not in needs_manual:
                needs_manual.append(name)

    passed_all = all(g.status in (GateStatus.PASS, GateStatus.WARN) for g in final)
    logger.info(
        f"Gates: {len(final)} evaluated, "
        f"{sum(1 for g in final if g.status != GateStatus.PASS)} not passing, needs manual {needs_manual}"
    )
    return GateSet(gates=final, passed_all=passed_all, needs_manual_fields=needs_manual)


def apply_gates(snapshot: ExtractionSnapshot, gate_set: GateSet) -> ExtractionSnapshot:
    """Return a snapshot carrying the evaluated gates."""
    return snapshot.model_copy(update={
        "validation_gates": gate_set.gates,
        "needs_manual_confirmation": not gate_set.passed_all,
    })
