import pytest

from concepta.exceptions import ParseError, ReconciliationError, ValidationError
from concepta.settings import ReconcileSettings
from concepta.zoning.catalogue import UnitCatalogue
from concepta.zoning.reconcile import (
    Discrepancy,
    Invariant,
    SchemaKind,
    derive_unit_mix_summary,
    extract_structured,
    reconcile_massing,
    reconcile_unit_mix,
)
from concepta.zoning.schema import MassingAlternative, ParcelRights, UnitMixPlan
from tests.utils_zoning import fenced, massing_payload, mutated, rights_payload, unit_mix_payload


@pytest.fixture()
def catalogue():
    return UnitCatalogue.default()


@pytest.fixture()
def rights():
    return ParcelRights.model_validate(rights_payload())


def _plan(payload=None):
    return UnitMixPlan.model_validate(payload or unit_mix_payload())


def _invariants(discrepancies):
    return [d.invariant for d in discrepancies]


def test_consistent_plan_has_no_discrepancies(rights, catalogue):
    result = extract_structured(fenced(unit_mix_payload()), SchemaKind.UNIT_MIX_PLAN, rights=rights, catalogue=catalogue)
    assert result.ok
    assert result.discrepancies == []
    assert result.value.building_summary.total_units == 150
    assert result.raise_for_discrepancies() is result.value


def test_total_units_mismatch_reported_not_raised(rights, catalogue):
    def drop_two(payload):
        floor = payload["floor_plans"][1]
        floor["units"][0]["count"] = 3
        floor["total_units"] = 8

    raw = fenced(mutated(unit_mix_payload(), drop_two))
    result = extract_structured(raw, SchemaKind.UNIT_MIX_PLAN, rights=rights, catalogue=catalogue)

    assert result.value.building_summary.total_units == 150
    mismatch = [d for d in result.discrepancies if d.invariant is Invariant.TOTAL_UNITS_MISMATCH]
    assert len(mismatch) == 1
    assert mismatch[0].expected == 148
    assert mismatch[0].actual == 150
    assert mismatch[0].magnitude == 2
    assert Invariant.SUMMARY_TOTAL_MISMATCH in _invariants(result.discrepancies)
    type_mismatch = [d for d in result.discrepancies if d.invariant is Invariant.UNIT_TYPE_COUNT_MISMATCH]
    assert [(d.unit_type, d.expected, d.actual) for d in type_mismatch] == [("n3", 68, 70)]

    with pytest.raises(ReconciliationError) as excinfo:
        result.raise_for_discrepancies()
    assert excinfo.value.discrepancies == result.discrepancies


def test_floor_total_mismatch():
    payload = mutated(unit_mix_payload(), lambda p: p["floor_plans"][5].update(total_units=11))
    issues = reconcile_unit_mix(_plan(payload))
    floor_issue = [d for d in issues if d.invariant is Invariant.FLOOR_TOTAL_MISMATCH]
    assert len(floor_issue) == 1
    assert floor_issue[0].floor_number == 5
    assert (floor_issue[0].expected, floor_issue[0].actual) == (10, 11)


def test_ground_floor_with_units(catalogue):
    def populate_ground(payload):
        payload["floor_plans"][0]["units"] = [{"unit_type": "n3", "area_sqm": 81, "count": 2}]
        payload["floor_plans"][0]["total_units"] = 2

    issues = reconcile_unit_mix(_plan(mutated(unit_mix_payload(), populate_ground)), catalogue=catalogue)
    ground = [d for d in issues if d.invariant is Invariant.GROUND_FLOOR_UNITS]
    assert len(ground) == 1
    assert ground[0].floor_number == 0
    assert ground[0].actual == 2


def test_penthouse_below_top_floor(catalogue):
    def move_penthouse(payload):
        payload["floor_plans"][10]["units"].append({"unit_type": "ph", "area_sqm": 180, "count": 1})
        payload["floor_plans"][10]["total_units"] += 1

    issues = reconcile_unit_mix(_plan(mutated(unit_mix_payload(), move_penthouse)), catalogue=catalogue)
    placement = [d for d in issues if d.invariant is Invariant.PENTHOUSE_PLACEMENT]
    assert len(placement) == 1
    assert placement[0].floor_number == 10
    assert placement[0].unit_type == "ph"
    assert placement[0].expected == 16


def test_penthouse_label_does_not_excuse_low_floor(catalogue):
    def relabel_floor_five(payload):
        floor = payload["floor_plans"][5]
        floor["floor_type"] = "penthouse"
        floor["units"].append({"unit_type": "ph", "area_sqm": 180, "count": 1})
        floor["total_units"] += 1

    issues = reconcile_unit_mix(_plan(mutated(unit_mix_payload(), relabel_floor_five)), catalogue=catalogue)
    placement = [d for d in issues if d.invariant is Invariant.PENTHOUSE_PLACEMENT]
    assert [(d.floor_number, d.unit_type) for d in placement] == [(5, "ph")]


def test_penthouse_block_may_span_two_top_floors(catalogue):
    def split_penthouses(payload):
        floor = payload["floor_plans"][15]
        floor["floor_type"] = "penthouse"
        floor["units"] = [{"unit_type": "mini_ph", "area_sqm": 154, "count": 1}]
        floor["total_units"] = 1

    issues = reconcile_unit_mix(_plan(mutated(unit_mix_payload(), split_penthouses)), catalogue=catalogue)
    assert Invariant.PENTHOUSE_PLACEMENT not in _invariants(issues)


def test_penthouse_units_only_floor_counts_as_top_block(catalogue):
    def stack_penthouses(payload):
        floor = payload["floor_plans"][15]
        floor["units"] = [{"unit_type": "ph", "area_sqm": 180, "count": 2}]
        floor["total_units"] = 2

    issues = reconcile_unit_mix(_plan(mutated(unit_mix_payload(), stack_penthouses)), catalogue=catalogue)
    assert Invariant.PENTHOUSE_PLACEMENT not in _invariants(issues)


def test_magnitude_is_serialised():
    payload = mutated(unit_mix_payload(), lambda p: p["building_summary"].update(total_units=152))
    issues = reconcile_unit_mix(_plan(payload))
    dumped = [d.model_dump(mode="json") for d in issues if d.invariant is Invariant.TOTAL_UNITS_MISMATCH]
    assert dumped[0]["magnitude"] == 2
    assert Discrepancy(invariant=Invariant.UNKNOWN_UNIT_TYPE, expected=None, actual="loft").model_dump()["magnitude"] is None


def test_penthouse_rule_needs_catalogue():
    def move_penthouse(payload):
        payload["floor_plans"][10]["units"].append({"unit_type": "ph", "area_sqm": 180, "count": 1})
        payload["floor_plans"][10]["total_units"] += 1

    issues = reconcile_unit_mix(_plan(mutated(unit_mix_payload(), move_penthouse)))
    assert Invariant.PENTHOUSE_PLACEMENT not in _invariants(issues)


def test_area_out_of_band_and_unknown_type(catalogue):
    def distort(payload):
        payload["floor_plans"][2]["units"][1]["area_sqm"] = 130
        payload["floor_plans"][3]["units"][0]["unit_type"] = "studio"

    issues = reconcile_unit_mix(_plan(mutated(unit_mix_payload(), distort)), catalogue=catalogue)
    band = [d for d in issues if d.invariant is Invariant.UNIT_AREA_OUT_OF_BAND]
    assert [(d.floor_number, d.unit_type, d.actual) for d in band] == [(2, "n4", 130)]
    unknown = [d for d in issues if d.invariant is Invariant.UNKNOWN_UNIT_TYPE]
    assert [d.actual for d in unknown] == ["studio"]


def test_percentages_must_sum_to_100():
    def skew(payload):
        payload["unit_mix_summary"][0]["percentage"] = 56

    issues = reconcile_unit_mix(_plan(mutated(unit_mix_payload(), skew)))
    assert Invariant.PERCENTAGE_SUM_MISMATCH in _invariants(issues)
    row = [d for d in issues if d.invariant is Invariant.PERCENTAGE_MISMATCH]
    assert [d.unit_type for d in row] == ["n3"]


def test_independent_rounding_is_tolerated():
    # 46.67 + 42.67 + 8 + 0.67 + 2 rounded independently sums to 101
    def round_each(payload):
        for entry, pct in zip(payload["unit_mix_summary"], (47, 43, 8, 1, 2)):
            entry["percentage"] = pct

    assert reconcile_unit_mix(_plan(mutated(unit_mix_payload(), round_each))) == []


def test_percentage_tolerance_is_configurable():
    def round_each(payload):
        for entry, pct in zip(payload["unit_mix_summary"], (47, 43, 8, 1, 2)):
            entry["percentage"] = pct

    plan = _plan(mutated(unit_mix_payload(), round_each))
    issues = reconcile_unit_mix(plan, settings=ReconcileSettings(percentage_tolerance=0.0))
    assert _invariants(issues) == [Invariant.PERCENTAGE_SUM_MISMATCH]


def test_main_area_mismatch():
    payload = mutated(unit_mix_payload(), lambda p: p["building_summary"].update(total_main_area_sqm=16000))
    issues = reconcile_unit_mix(_plan(payload))
    area = [d for d in issues if d.invariant is Invariant.MAIN_AREA_MISMATCH]
    assert len(area) == 1
    assert area[0].expected == 14960
    assert area[0].actual == 16000


def test_targets_checked_against_rights():
    rights = ParcelRights.model_validate(rights_payload(max_units=160, main_area_sqm=12000))
    issues = reconcile_unit_mix(_plan(), rights=rights)
    assert set(_invariants(issues)) == {Invariant.TARGET_UNITS_MISMATCH, Invariant.TARGET_AREA_MISMATCH}
    units = next(d for d in issues if d.invariant is Invariant.TARGET_UNITS_MISMATCH)
    assert (units.expected, units.actual) == (160, 150)


def test_derived_summary_sums_to_100(catalogue):
    summary = derive_unit_mix_summary(_plan().floor_plans, catalogue)
    assert [(e.unit_type, e.total_count, e.percentage) for e in summary] == [
        ("n3", 70, 46),
        ("n4", 64, 43),
        ("n5", 12, 8),
        ("mini_ph", 1, 1),
        ("ph", 3, 2),
    ]
    assert sum(e.percentage for e in summary) == 100
    assert summary[3].label == "mini PH"


def test_derived_summary_thirds():
    plan = _plan(mutated(unit_mix_payload(), lambda p: p.update(floor_plans=[
        {"floor_number": 1, "floor_type": "typical", "total_units": 3, "units": [
            {"unit_type": "n3", "area_sqm": 81, "count": 1},
            {"unit_type": "n4", "area_sqm": 109, "count": 1},
            {"unit_type": "n5", "area_sqm": 135, "count": 1},
        ]},
    ])))
    summary = derive_unit_mix_summary(plan.floor_plans)
    assert [e.percentage for e in summary] == [34, 33, 33]


def test_derived_summary_empty_plan():
    assert derive_unit_mix_summary([]) == []


def test_reconcile_is_pure(rights, catalogue):
    raw = fenced(mutated(unit_mix_payload(), lambda p: p["building_summary"].update(total_units=149)))
    first = extract_structured(raw, SchemaKind.UNIT_MIX_PLAN, rights=rights, catalogue=catalogue)
    second = extract_structured(raw, SchemaKind.UNIT_MIX_PLAN, rights=rights, catalogue=catalogue)
    assert first.value == second.value
    assert first.discrepancies == second.discrepancies


def test_extract_raises_parse_error_with_raw_text():
    with pytest.raises(ParseError) as excinfo:
        extract_structured("The document has no Table 5.", SchemaKind.PARCEL_RIGHTS)
    assert excinfo.value.raw_text == "The document has no Table 5."


def test_extract_raises_validation_error():
    raw = fenced(mutated(rights_payload(), lambda p: p["rights"].update(max_units="many")))
    with pytest.raises(ValidationError) as excinfo:
        extract_structured(raw, SchemaKind.PARCEL_RIGHTS)
    assert excinfo.value.path == "rights.max_units"


def test_massing_within_limits(rights):
    alternatives = [MassingAlternative.model_validate(item) for item in massing_payload()]
    assert reconcile_massing(alternatives, rights) == []


def test_massing_limits_and_count(rights):
    payload = massing_payload()[:2]
    payload[0]["height_m"] = 72
    payload[1]["key_metrics"]["total_floors"] = 20
    alternatives = [MassingAlternative.model_validate(item) for item in payload]
    issues = reconcile_massing(alternatives, rights)
    assert [(d.invariant, d.alternative_id) for d in issues] == [
        (Invariant.ALTERNATIVE_COUNT, None),
        (Invariant.HEIGHT_EXCEEDS_MAX, "A"),
        (Invariant.FLOORS_EXCEED_MAX, "B"),
    ]


def test_extract_massing_with_rights(rights):
    result = extract_structured(fenced(massing_payload()), SchemaKind.MASSING_ALTERNATIVES, rights=rights)
    assert result.ok
    assert len(result.value) == 3
