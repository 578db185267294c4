import pytest

from app.features.documents.domain import DocumentFieldSet, DocumentType, Verdict
from app.features.documents.validation import (
    FIELD_SETS_NAMESPACE,
    CrossValidationEngine,
    comparable_fields,
    field_sets_cache_key,
    similarity,
)
from app.features.documents.validation.comparability import normalize_for_comparison
from app.services.cache import TwoTierCache

DT = DocumentType


def _engine(source=None, **kwargs):
    options = {
        "similarity_threshold": 0.8,
        "field_thresholds": {},
        "valid_match_rate": 0.8,
        "review_match_rate": 0.6,
    }
    options.update(kwargs)
    return CrossValidationEngine(source, **options)


def test_similarity_identity_and_symmetry():
    assert similarity("maria silva", "maria silva") == 1.0
    assert similarity("", "") == 1.0
    assert similarity("maria", "mario") == similarity("mario", "maria")
    assert similarity("abc", "") == 0.0
    assert similarity("maria", "mario") == pytest.approx(0.8)


def test_comparability_table_is_symmetric():
    forward = comparable_fields(DT.RG, DT.CPF)
    backward = comparable_fields(DT.CPF, DT.RG)

    assert ("cpf", "number", "digits") in forward
    assert ("number", "cpf", "digits") in backward
    assert {(a, b) for a, b, _ in forward} == {(b, a) for a, b, _ in backward}


def test_rg_number_is_not_comparable():
    for other in DT:
        assert all(field != "number" for field, _, _ in comparable_fields(DT.RG, other))


def test_same_type_documents_are_not_compared():
    assert comparable_fields(DT.RG, DT.RG) == []


def test_parent_names_only_between_rg_and_birth_certificate():
    pairs = {(a, b) for a, b, _ in comparable_fields(DT.RG, DT.BIRTH_CERTIFICATE)}
    assert ("mother_name", "mother_name") in pairs
    assert ("father_name", "father_name") in pairs
    assert all(a != "mother_name" for a, _, _ in comparable_fields(DT.RG, DT.SCHOOL_RECORD))


def test_name_particles_do_not_break_a_match():
    engine = _engine()
    other = DocumentFieldSet(2, DT.BIRTH_CERTIFICATE, {"name": "maria da silva"})

    result = engine.compare(1, DT.RG, {"name": "Maria Silva"}, [other])

    assert result.matched_fields == 1
    assert result.total_comparable_fields == 1
    assert result.verdict == Verdict.VALID
    assert result.match_rate == 1.0


def test_nothing_comparable_is_pending():
    engine = _engine()
    other = DocumentFieldSet(2, DT.PROOF_OF_ADDRESS, {"address": "rua a"})

    result = engine.compare(1, DT.RG, {"number": "123"}, [other])

    assert result.verdict == Verdict.PENDING
    assert result.match_rate is None
    assert result.total_comparable_fields == 0


def test_missing_values_are_left_out_of_the_denominator():
    engine = _engine()
    other = DocumentFieldSet(2, DT.BIRTH_CERTIFICATE, {"name": "maria silva", "birth_date": ""})

    result = engine.compare(1, DT.RG, {"name": "maria silva", "birth_date": "15/03/2015"}, [other])

    assert result.total_comparable_fields == 1
    assert result.verdict == Verdict.VALID


def test_verdict_cutovers():
    engine = _engine()

    assert engine.verdict_for(4, 5) == (Verdict.VALID, 0.8)
    assert engine.verdict_for(3, 5) == (Verdict.NEEDS_REVIEW, 0.6)
    assert engine.verdict_for(1, 2)[0] == Verdict.INVALID
    assert engine.verdict_for(0, 0) == (Verdict.PENDING, None)


def test_verdict_improves_monotonically_with_matches():
    engine = _engine()
    order = [Verdict.INVALID, Verdict.NEEDS_REVIEW, Verdict.VALID]

    ranks = [order.index(engine.verdict_for(matched, 10)[0]) for matched in range(11)]

    assert ranks == sorted(ranks)


def test_mismatching_values_lower_the_rate():
    engine = _engine()
    rg = {"name": "maria silva", "birth_date": "15/03/2015", "cpf": "52998224725"}
    cpf = DocumentFieldSet(2, DT.CPF, {"name": "joana souza", "birth_date": "01/01/2010", "number": "52998224725"})

    result = engine.compare(1, DT.RG, rg, [cpf])

    assert result.total_comparable_fields == 3
    assert result.matched_fields == 1
    assert result.verdict == Verdict.INVALID
    assert {m.field_name for m in result.matches if not m.matched} == {"name", "birth_date"}


def test_field_threshold_overrides():
    engine = _engine(field_thresholds={"name": 0.95, "rg:birth_certificate:mother_name": 0.5})

    assert engine.threshold_for("name", DT.RG, DT.CPF) == 0.95
    assert engine.threshold_for("mother_name", DT.BIRTH_CERTIFICATE, DT.RG) == 0.5
    assert engine.threshold_for("birth_date", DT.RG, DT.CPF) == 0.8


def test_dates_compare_after_normalization():
    assert normalize_for_comparison("15.03.2015", "date") == normalize_for_comparison("15/03/2015", "date")


class CountingSource:
    def __init__(self, field_sets):
        self.field_sets = field_sets
        self.calls = 0

    async def latest_field_sets(self, enrollment_id):
        self.calls += 1
        return self.field_sets


@pytest.mark.asyncio
async def test_cross_validate_excludes_itself_and_same_type_documents():
    source = CountingSource(
        [
            DocumentFieldSet(1, DT.RG, {"name": "maria silva"}),
            DocumentFieldSet(2, DT.RG, {"name": "outra pessoa"}),
            DocumentFieldSet(3, DT.BIRTH_CERTIFICATE, {"name": "maria silva"}),
        ]
    )
    engine = _engine(source)

    result = await engine.cross_validate(1, DT.RG, {"name": "maria silva"}, enrollment_id=50)

    assert [m.other_document_id for m in result.matches] == [3]
    assert result.verdict == Verdict.VALID


@pytest.mark.asyncio
async def test_field_sets_are_cached_per_enrollment(fake_redis):
    source = CountingSource([DocumentFieldSet(3, DT.BIRTH_CERTIFICATE, {"name": "maria silva"})])
    cache = TwoTierCache(fake_redis, prefix="t:", default_ttl=60, sweep_interval=60)
    engine = _engine(source, cache=cache)

    await engine.cross_validate(1, DT.RG, {"name": "maria silva"}, enrollment_id=50)
    second = await engine.cross_validate(1, DT.RG, {"name": "maria silva"}, enrollment_id=50)

    assert source.calls == 1
    assert second.matched_fields == 1

    await cache.delete(field_sets_cache_key(50), namespace=FIELD_SETS_NAMESPACE)
    await engine.cross_validate(1, DT.RG, {"name": "maria silva"}, enrollment_id=50)
    assert source.calls == 2
