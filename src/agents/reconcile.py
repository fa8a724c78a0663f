"""Reconciliation of rule-based extraction with the AI extraction.

The rule-based value wins by default. The AI value only decides a field
when the two disagree and city parcel data says the AI value is closer,
or when no rule-based value exists.
"""
import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from agents.extractors.plan import PlanExtractor
from agents.relevance import COVER_SHEET, FLOOR_PLAN, GENERAL, OCCUPANT_LOAD, ZONING
from extraction.cancellation import CancellationToken
from extraction.candidates import classify_pages_for_ai, selected_pages
from extraction.errors import PipelineCancelled
from extraction.zoning import redundancy_score
from schemas.ai import AiPlanExtraction
from schemas.enums import EvidenceSource, PageCategory
from schemas.plan_data import UnitCountMention
from schemas.snapshot import DataPointEntry, ExtractionSnapshot, FieldReconciliation, ParcelData
from verifier.compare import as_number, normalize_text
from verifier.gates import apply_gates, evaluate_gates, rule_based_values

logger = logging.getLogger(__name__)

Value = Optional[Union[int, float, str]]

AI_MENTION_CONFIDENCE = 0.8
UNIT_AGREEMENT_SLACK = 2

CATEGORY_PAGE_TYPES = {
    PageCategory.COVER_SHEET: COVER_SHEET,
    PageCategory.ZONING_ANALYSIS: ZONING,
    PageCategory.UNIT_SCHEDULE: OCCUPANT_LOAD,
    PageCategory.FLOOR_PLAN: FLOOR_PLAN,
}

# (ai attribute, bedroom type key, label)
MIX_FIELDS = [
    ("studio", "STUDIO", "Studios"),
    ("br1", "1BR", "1-Bedrooms"),
    ("br2", "2BR", "2-Bedrooms"),
    ("br3", "3BR", "3-Bedrooms"),
    ("br4plus", "4BR_PLUS", "4+ Bedrooms"),
]


def _fmt(value: Any) -> str:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return f"{int(value):,}" if float(value).is_integer() else f"{value:.2f}"
    return str(value)


def build_parcel_context(parcel: Optional[ParcelData], zone: Optional[str] = None) -> str:
    """City-data block appended to the verify prompt. Empty without a parcel."""
    if parcel is None:
        return ""
    parts = [
        "PLUTO database indicates:",
        f"- Lot Area: {parcel.lot_area:,.0f} SF",
        f"- Residential FAR: {parcel.resid_far:g}",
        f"- Building Area: {parcel.bldg_area:,.0f} SF",
        f"- Max Residential Floor Area: ~{round(parcel.lot_area * parcel.resid_far):,} SF",
    ]
    if zone:
        parts.append(f"- Zone District: {zone}")
    parts.append("")
    parts.append("Verify that your extraction is consistent with these city parameters.")
    parts.append("If any extracted value deviates significantly from city data, add a warning explaining the discrepancy.")
    return "\n".join(parts)


# ============================================================================
# Field reconciliation
# ============================================================================

def _numeric_field(field: str, rule: Optional[float], ai: Optional[float], tolerance: float, label: str) -> Optional[FieldReconciliation]:
    if rule is not None and ai is not None:
        agreement = abs(rule - ai) / max(abs(rule), 0.1) <= tolerance
        note = (
            f"{label} agreement: rule={_fmt(rule)}, AI={_fmt(ai)}."
            if agreement
            else f"{label} disagreement: rule={_fmt(rule)}, AI={_fmt(ai)}. Manual review recommended."
        )
        return FieldReconciliation(
            field=field, rule_based_value=rule, ai_value=ai, agreement=agreement,
            final_value=rule, final_confidence=0.9 if agreement else 0.65, note=note,
        )
    if ai is not None and ai != 0:
        return FieldReconciliation(
            field=field, ai_value=ai, final_value=ai, final_confidence=0.7,
            note=f"{label}: AI extracted {_fmt(ai)} (no rule-based value).",
        )
    return None


def _string_field(field: str, rule: Optional[str], ai: Optional[str], label: str) -> Optional[FieldReconciliation]:
    if rule and ai:
        agreement = normalize_text(rule) == normalize_text(ai)
        note = f'{label} agreement: "{rule}".' if agreement else f'{label} disagreement: rule="{rule}", AI="{ai}".'
        return FieldReconciliation(
            field=field, rule_based_value=rule, ai_value=ai, agreement=agreement,
            final_value=rule, final_confidence=0.9 if agreement else 0.6, note=note,
        )
    if ai:
        return FieldReconciliation(
            field=field, ai_value=ai, final_value=ai, final_confidence=0.7,
            note=f'{label}: AI extracted "{ai}" (no rule-based value).',
        )
    return None


def _closer_to(expected: float, rule: float, ai: float) -> float:
    return rule if abs(rule - expected) <= abs(ai - expected) else ai


def _units_confidence(snapshot: ExtractionSnapshot) -> float:
    if snapshot.unit_records:
        return snapshot.confidence.overall or 0.5
    if snapshot.zoning.total_units is not None:
        return snapshot.zoning.total_units.confidence
    return 0.5


def _rule_mix(snapshot: ExtractionSnapshot) -> Dict[str, int]:
    if snapshot.normalized is not None and snapshot.normalized.unit_mix:
        return snapshot.normalized.unit_mix
    return snapshot.unit_totals.by_bedroom_type


def _rule_building(snapshot: ExtractionSnapshot) -> Tuple[Optional[float], Optional[float]]:
    cover = snapshot.cover_sheet
    floors = (cover.floors if cover else None) or as_number(snapshot.zoning.value_of("floors"))
    area = (cover.building_area_sf if cover else None) or as_number(snapshot.zoning.value_of("building_area"))
    return floors, area


def reconcile_with_rule_based(
    snapshot: ExtractionSnapshot,
    ai: AiPlanExtraction,
    parcel: Optional[ParcelData] = None,
) -> List[FieldReconciliation]:
    """
    Compare each AI field with its rule-based counterpart.

    Args:
        snapshot: Rule-based extraction result
        ai: Sanitized AI extraction
        parcel: City data used to break FAR and lot area disagreements

    Returns:
        One FieldReconciliation per field that has at least one value
    """
    rule = rule_based_values(snapshot)
    result: List[FieldReconciliation] = []

    rule_units = rule["total_units"]
    ai_units = ai.totals.total_units
    if rule_units is not None and ai_units is not None:
        rule_units = int(rule_units)
        base = _units_confidence(snapshot)
        agreement = abs(rule_units - ai_units) <= UNIT_AGREEMENT_SLACK
        if agreement:
            confidence = min(1.0, base + 0.1)
            note = f"Rule-based ({rule_units}) and AI ({ai_units}) agree. Confidence boosted."
        else:
            confidence = max(0.3, base - 0.1)
            note = (
                f"Disagreement: rule-based={rule_units}, AI={ai_units}. "
                f"Using rule-based value. Manual review recommended."
            )
        result.append(FieldReconciliation(
            field="total_units", rule_based_value=rule_units, ai_value=ai_units, agreement=agreement,
            final_value=rule_units, final_confidence=confidence, note=note,
        ))
    elif ai_units is not None and ai_units >= 1:
        result.append(FieldReconciliation(
            field="total_units", ai_value=ai_units, final_value=ai_units, final_confidence=0.7,
            note=f"Total units: AI extracted {ai_units} (no rule-based value).",
        ))

    rule_far = rule["far"]
    ai_far = ai.zoning.far
    if rule_far is not None and ai_far is not None:
        agreement = abs(rule_far - ai_far) / max(rule_far, 0.1) <= 0.05
        final = rule_far
        confidence = snapshot.zoning.far.confidence if snapshot.zoning.far else 0.5
        if agreement:
            confidence = min(1.0, confidence + 0.05)
            note = f"FAR agreement: rule-based={rule_far:.2f}, AI={ai_far:.2f}."
        elif parcel and parcel.resid_far > 0:
            final = _closer_to(parcel.resid_far, rule_far, ai_far)
            note = (
                f"FAR disagreement: rule={rule_far:.2f}, AI={ai_far:.2f}. "
                f"Using value closer to PLUTO FAR ({parcel.resid_far:g})."
            )
        else:
            note = f"FAR disagreement: rule={rule_far:.2f}, AI={ai_far:.2f}. Using rule-based value."
        result.append(FieldReconciliation(
            field="far", rule_based_value=rule_far, ai_value=ai_far, agreement=agreement,
            final_value=final, final_confidence=confidence, note=note,
        ))
    else:
        entry = _numeric_field("far", None, ai_far, 0.05, "FAR")
        if entry:
            result.append(entry)

    rule_lot = rule["lot_area"]
    ai_lot = ai.zoning.lot_area_sf
    if rule_lot is not None and ai_lot is not None and ai_lot > 0:
        agreement = abs(rule_lot - ai_lot) / max(rule_lot, 1) <= 0.05
        final = rule_lot
        if agreement:
            note = f"Lot area agreement: rule={rule_lot:,.0f}, AI={ai_lot:,.0f}."
        elif parcel and parcel.lot_area > 0:
            final = _closer_to(parcel.lot_area, rule_lot, ai_lot)
            note = f"Lot area disagreement. Using value closer to PLUTO ({parcel.lot_area:,.0f} SF)."
        else:
            note = f"Lot area disagreement: rule={rule_lot:,.0f}, AI={ai_lot:,.0f}."
        result.append(FieldReconciliation(
            field="lot_area", rule_based_value=rule_lot, ai_value=ai_lot, agreement=agreement,
            final_value=final, final_confidence=0.9 if agreement else 0.7, note=note,
        ))
    elif ai_lot is not None and ai_lot > 0:
        result.append(FieldReconciliation(
            field="lot_area", ai_value=ai_lot, final_value=ai_lot, final_confidence=0.7,
            note=f"AI extracted lot area: {ai_lot:,.0f} SF (no rule-based value).",
        ))

    rule_floors, rule_building_area = _rule_building(snapshot)
    zone = snapshot.zoning.value_of("zone_district")
    if zone is None and snapshot.cover_sheet is not None:
        zone = snapshot.cover_sheet.zone
    rule_mix = _rule_mix(snapshot)
    totals = snapshot.totals

    candidates = [
        _numeric_field("zoning_floor_area", rule["zoning_floor_area"], ai.zoning.zoning_floor_area_sf, 0.05, "Zoning floor area"),
        _numeric_field("max_far", None, ai.zoning.max_far, 0.05, "Max FAR"),
        _string_field("zone", zone, ai.zoning.zone, "Zone district"),
        _numeric_field("floors", rule_floors, ai.building.floors, 0.01, "Floors"),
        _numeric_field("building_area", rule_building_area, ai.building.building_area_sf, 0.05, "Building area"),
    ]
    for attr, key, label in MIX_FIELDS:
        rule_val = rule_mix.get(key) or None
        candidates.append(_numeric_field(attr, rule_val, getattr(ai.unit_mix, attr), 0.01, label))
    candidates.append(_numeric_field(
        "affordable_units", totals.affordable_units or None, ai.totals.affordable_units, 0.01, "Affordable units"
    ))
    candidates.append(_numeric_field(
        "market_units", totals.market_units or None, ai.totals.market_units, 0.01, "Market units"
    ))
    result.extend(c for c in candidates if c is not None)

    disagreements = [r.field for r in result if r.agreement is False]
    if disagreements:
        logger.info(f"Reconciliation disagreements: {disagreements}")
    return result


def ai_unit_mention(ai: AiPlanExtraction) -> Optional[UnitCountMention]:
    units = ai.totals.total_units
    if units is None or units < 1:
        return None
    return UnitCountMention(
        value=units,
        page=-1,
        source_type=EvidenceSource.AI,
        snippet=f"AI extracted {units} total units",
        confidence=AI_MENTION_CONFIDENCE,
    )


# ============================================================================
# Verify pass
# ============================================================================

def verify_snapshot(
    snapshot: ExtractionSnapshot,
    page_texts: Mapping[int, str],
    extractor: PlanExtractor,
    parcel: Optional[ParcelData] = None,
    cancel_token: Optional[CancellationToken] = None,
) -> ExtractionSnapshot:
    """
    Run the on-demand AI verification pass over a finished snapshot.

    Earlier pipeline stages are not re-run. On any failure the original
    snapshot is returned with a warning appended.

    Raises:
        PipelineCancelled: If the token is set before or during the AI call
    """
    parcel = parcel or snapshot.parcel
    zone = snapshot.manual_overrides.zone_district or snapshot.zoning.value_of("zone_district")

    relevance = classify_pages_for_ai(dict(page_texts))
    pages = selected_pages(relevance)
    hints = {r.page: CATEGORY_PAGE_TYPES.get(r.category, GENERAL) for r in relevance}
    selected = {p: page_texts[p] for p in pages}

    def failed(reason: str) -> ExtractionSnapshot:
        warning = f"AI verification failed: {reason}"
        logger.warning(warning)
        confidence = snapshot.confidence.model_copy(update={"warnings": snapshot.confidence.warnings + [warning]})
        return snapshot.model_copy(update={"confidence": confidence})

    if not selected:
        return failed("No relevant pages found for AI verification")

    try:
        extraction, status = extractor.extract_from_pages(
            selected, hints, build_parcel_context(parcel, zone), cancel_token
        )
    except PipelineCancelled:
        raise
    except Exception as e:
        return failed(str(e))

    if extraction is None:
        return failed(status.reason or status.status)

    reconciliation = reconcile_with_rule_based(snapshot, extraction, parcel)
    mentions = [m for m in snapshot.unit_count_mentions if m.source_type != EvidenceSource.AI]
    mention = ai_unit_mention(extraction)
    if mention is not None:
        mentions.append(mention)

    verified = snapshot.model_copy(update={
        "reconciliation": reconciliation,
        "ai_extraction": extraction,
        "ai_extraction_used": True,
        "ai_fallback_reason": None,
        "unit_count_mentions": mentions,
        "redundancy_score": redundancy_score(mentions),
    })
    logger.info(f"AI verification reconciled {len(reconciliation)} fields")
    return apply_gates(verified, evaluate_gates(verified, parcel, zone))


# ============================================================================
# Data points
# ============================================================================

# key, label, category, unit
DATA_POINTS = [
    ("lot_area", "Lot Area", "zoning", "SF"),
    ("far", "FAR", "zoning", None),
    ("max_far", "Max FAR", "zoning", None),
    ("zoning_floor_area", "Zoning Floor Area", "zoning", "SF"),
    ("zone", "Zone District", "zoning", None),
    ("floors", "Floors", "building", None),
    ("building_area", "Building Area", "building", "SF"),
    ("total_units", "Total Units", "unit_mix", "units"),
    ("affordable_units", "Affordable Units", "unit_mix", "units"),
    ("market_units", "Market Units", "unit_mix", "units"),
] + [(attr, label, "unit_mix", "units") for attr, _, label in MIX_FIELDS]


def _rule_value(snapshot: ExtractionSnapshot, key: str) -> Value:
    rule = rule_based_values(snapshot)
    if key in rule:
        return rule[key]
    floors, building_area = _rule_building(snapshot)
    if key == "floors":
        return floors
    if key == "zone":
        return snapshot.zoning.value_of("zone_district") or (snapshot.cover_sheet.zone if snapshot.cover_sheet else None)
    if key == "affordable_units":
        return snapshot.totals.affordable_units or None
    if key == "market_units":
        return snapshot.totals.market_units or None
    mix_keys = {attr: bedroom for attr, bedroom, _ in MIX_FIELDS}
    if key in mix_keys:
        return _rule_mix(snapshot).get(mix_keys[key]) or None
    return None


def build_data_points(snapshot: ExtractionSnapshot) -> List[DataPointEntry]:
    """Flat per-field view of rule-based, AI and final values."""
    by_field = {r.field: r for r in snapshot.reconciliation}
    entries = []
    for key, label, category, unit in DATA_POINTS:
        rec = by_field.get(key)
        if rec is not None:
            entries.append(DataPointEntry(
                key=key, label=label, category=category, unit=unit,
                rule_based_value=rec.rule_based_value, ai_value=rec.ai_value,
                final_value=rec.final_value, confidence=rec.final_confidence,
                agreement=rec.agreement, note=rec.note,
            ))
            continue
        value = _rule_value(snapshot, key)
        if value is None:
            continue
        entries.append(DataPointEntry(
            key=key, label=label, category=category, unit=unit,
            rule_based_value=value, final_value=value,
            confidence=snapshot.confidence.overall, note="rule-based only",
        ))
    return entries
