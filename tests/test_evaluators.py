import math

import pytest

from vareval.evaluators import (
    ComparisonOrder,
    MultiallelicSummary,
    UnsupportedVariantType,
    VariantEvaluator,
    build_evaluators,
    is_transition,
    ratio,
)
from vareval.models import Allele, GenomicLocus, make_record


def _locus(pos: int) -> GenomicLocus:
    return GenomicLocus("1", pos)


def test_transition_classification() -> None:
    assert is_transition(Allele("A"), Allele("G"))
    assert is_transition(Allele("c"), Allele("T"))
    assert not is_transition(Allele("A"), Allele("T"))
    assert not is_transition(Allele("G"), Allele("C"))


def test_ratio_zero_denominator_is_nan() -> None:
    assert math.isnan(ratio(0, 0))
    assert math.isnan(ratio(3, 0))
    assert ratio(1, 4) == 0.25


def test_declared_order() -> None:
    assert MultiallelicSummary.comparison_order == ComparisonOrder.EVAL_AND_COMP


def test_processed_loci_counts_skipped_and_present_bases() -> None:
    ev = MultiallelicSummary()
    ev.update_locus(_locus(10), "A", 9)
    ev.update_locus(_locus(20), None, 10)
    assert ev.n_processed_loci == 20


def test_triallelic_snp_counts() -> None:
    ev = MultiallelicSummary()
    ev.update_pair(make_record("1", 5, "A", ("G", "T")), None)
    assert ev.n_snps == 1
    assert ev.n_multi_snps == 1
    assert ev.n_ti + ev.n_tv == 2
    assert (ev.n_ti, ev.n_tv) == (1, 1)


def test_biallelic_snp_skips_titv_and_novelty() -> None:
    ev = MultiallelicSummary()
    ev.update_pair(make_record("1", 5, "A", ("G",)), make_record("1", 5, "A", ("G",)))
    assert ev.n_snps == 1
    assert ev.n_multi_snps == 0
    assert ev.n_ti == ev.n_tv == 0
    assert ev.known_snps_complete == ev.known_snps_partial == 0


def test_snp_novelty_against_comparison() -> None:
    ev = MultiallelicSummary()
    ev.update_pair(make_record("1", 5, "A", ("G", "T")), make_record("1", 5, "A", ("T", "G")))
    ev.update_pair(make_record("1", 6, "C", ("G", "T")), make_record("1", 6, "C", ("T",)))
    ev.update_pair(make_record("1", 7, "C", ("G", "T")), make_record("1", 7, "C", ("A",)))
    assert ev.known_snps_complete == 1
    assert ev.known_snps_partial == 1


def test_absent_comparison_never_counts_known() -> None:
    ev = MultiallelicSummary()
    for pos in range(1, 6):
        ev.update_pair(make_record("1", pos, "A", ("G", "T")), None)
        ev.update_pair(make_record("1", pos, "AC", ("A", "ACC")), None)
    assert ev.known_snps_complete == ev.known_snps_partial == 0
    assert ev.known_indels_complete == ev.known_indels_partial == 0
    assert ev.n_multi_snps == 5
    assert ev.n_multi_indels == 5


def test_indels() -> None:
    ev = MultiallelicSummary()
    ev.update_pair(make_record("1", 5, "A", ("AT",)), None)
    ev.update_pair(make_record("1", 6, "AC", ("A", "ACTT")), make_record("1", 6, "AC", ("A",)))
    assert ev.n_indels == 2
    assert ev.n_multi_indels == 1
    assert ev.known_indels_partial == ev.known_indels_complete == 0


def test_monomorphic_and_absent_eval_are_ignored() -> None:
    ev = MultiallelicSummary()
    ev.update_pair(None, None)
    ev.update_pair(make_record("1", 5, "A", ("G", "T"), genotypes={"s": ("A", "A")}), None)
    assert ev.n_snps == 0


def test_unsupported_type_raises() -> None:
    ev = MultiallelicSummary()
    with pytest.raises(UnsupportedVariantType):
        ev.update_pair(make_record("1", 5, "AC", ("GT",)), None)
    assert ev.n_snps == ev.n_indels == 0


def test_record_without_alternates_is_skipped() -> None:
    ev = MultiallelicSummary()
    before = ev.counters()
    ev.update_pair(make_record("1", 6, "A", ()), None)
    ev.update_pair(make_record("1", 7, "C", ()), make_record("1", 7, "C", ("T",)))
    assert ev.counters() == before


def test_finalize_derives_ratios() -> None:
    ev = MultiallelicSummary()
    ev.update_locus(_locus(100), "A", 99)
    ev.update_pair(make_record("1", 5, "A", ("G", "T")), make_record("1", 5, "A", ("G",)))
    ev.update_pair(make_record("1", 6, "A", ("G",)), None)
    ev.update_pair(make_record("1", 7, "AC", ("A", "ACTT")), None)
    ev.finalize()

    table = ev.results()
    assert table["nProcessedLoci"] == 100
    assert table["processedMultiSnpRatio"] == pytest.approx(0.01)
    assert table["variantMultiSnpRatio"] == pytest.approx(0.5)
    assert table["processedMultiIndelRatio"] == pytest.approx(0.01)
    assert table["variantMultiIndelRatio"] == pytest.approx(1.0)
    assert table["TiTvRatio"] == pytest.approx(1.0)
    assert table["SNPNoveltyRate"] == "0.00"
    # indel novelty uses the multi-allelic SNP count as its total
    assert table["indelNoveltyRate"] == "1.00"


def test_finalize_with_no_variants() -> None:
    ev = MultiallelicSummary()
    ev.finalize()
    table = ev.results()
    assert math.isnan(table["variantMultiSnpRatio"])
    assert math.isnan(table["variantMultiIndelRatio"])
    assert math.isnan(table["processedMultiSnpRatio"])
    assert math.isnan(table["TiTvRatio"])
    assert table["SNPNoveltyRate"] == "NA"
    assert table["indelNoveltyRate"] == "NA"
    formatted = {f.name: f.formatted for f in table.fields}
    assert formatted["TiTvRatio"] == "NaN"
    assert formatted["nSNPs"] == "0"


def test_formatted_values_use_declared_format() -> None:
    ev = MultiallelicSummary()
    ev.update_locus(_locus(3), "A", 2)
    ev.update_pair(make_record("1", 3, "A", ("G", "T")), None)
    ev.finalize()
    formatted = {f.name: f.formatted for f in ev.results().fields}
    assert formatted["processedMultiSnpRatio"] == "0.33333"
    assert formatted["variantMultiSnpRatio"] == "1.000"
    assert formatted["TiTvRatio"] == "1.00"


def test_lifecycle_guards() -> None:
    ev = MultiallelicSummary()
    with pytest.raises(RuntimeError):
        ev.results()
    ev.update_pair(make_record("1", 5, "A", ("G", "T")), None)
    ev.finalize()
    first = ev.results()
    ev.finalize()
    assert ev.results().as_dict().keys() == first.as_dict().keys()
    assert ev.n_multi_snps == 1
    with pytest.raises(RuntimeError):
        ev.update_pair(make_record("1", 6, "A", ("G",)), None)
    with pytest.raises(RuntimeError):
        ev.update_locus(_locus(7), "A", 0)


def test_counters_never_decrease() -> None:
    ev = MultiallelicSummary()
    records = [
        make_record("1", 1, "A", ("G", "T")),
        make_record("1", 2, "A", ("G",)),
        make_record("1", 3, "AC", ("A", "ACTT")),
        make_record("1", 4, "A", ("AT",)),
    ]
    previous = ev.counters()
    for rec in records:
        ev.update_locus(rec.locus, "A", 0)
        ev.update_pair(rec, make_record("1", rec.locus.pos, rec.ref.bases, ("G",)))
        current = ev.counters()
        assert all(current[k] >= previous[k] for k in current)
        previous = current


def test_merge_then_finalize_matches_single_pass() -> None:
    region_a = [(make_record("1", 5, "A", ("G", "T")), make_record("1", 5, "A", ("G",))), (make_record("1", 9, "A", ("G",)), None)]
    region_b = [(make_record("2", 3, "C", ("T", "A")), None), (make_record("2", 8, "AC", ("A", "ACTT")), None)]

    def feed(ev: MultiallelicSummary, pairs: list) -> None:
        for eval_rec, comp_rec in pairs:
            ev.update_locus(eval_rec.locus, eval_rec.ref.bases[0], 4)
            ev.update_pair(eval_rec, comp_rec)

    single = MultiallelicSummary()
    feed(single, region_a + region_b)
    single.finalize()

    left, right = MultiallelicSummary(), MultiallelicSummary()
    feed(left, region_a)
    feed(right, region_b)
    left.merge(right)
    left.finalize()

    assert left.results().as_dict() == single.results().as_dict()


def test_merge_after_finalize_rejected() -> None:
    a, b = MultiallelicSummary(), MultiallelicSummary()
    b.finalize()
    with pytest.raises(RuntimeError):
        a.merge(b)


def test_build_evaluators() -> None:
    evs = build_evaluators()
    assert [e.name for e in evs] == ["MultiallelicSummary"]
    with pytest.raises(ValueError):
        build_evaluators(["Nope"])


class _LocusCounter(VariantEvaluator):
    name = "LocusCounter"
    comparison_order = ComparisonOrder.LOCUS


def test_default_locus_update_is_guarded_after_finalize() -> None:
    ev = _LocusCounter()
    ev.update_locus(_locus(1), "A", 0)
    ev.finalize()
    with pytest.raises(RuntimeError):
        ev.update_locus(_locus(2), "A", 0)


def test_merge_with_region_that_alone_has_undefined_ratios() -> None:
    # region_a alone has no SNPs, so its SNP ratios would be NaN
    region_a = [make_record("1", 4, "AC", ("A", "ACTT")), make_record("1", 6, "A", ("AT",))]
    region_b = [
        make_record("2", 2, "A", ("C", "T")),
        make_record("2", 5, "G", ("T",)),
        make_record("2", 7, "C", ("A",)),
    ]

    def feed(ev: MultiallelicSummary, records: list) -> None:
        for rec in records:
            ev.update_locus(rec.locus, rec.ref.bases[0], 2)
            ev.update_pair(rec, None)

    alone = MultiallelicSummary()
    feed(alone, region_a)
    alone.finalize()
    assert math.isnan(alone.results()["TiTvRatio"])

    single = MultiallelicSummary()
    feed(single, region_a + region_b)
    single.finalize()

    left, right = MultiallelicSummary(), MultiallelicSummary()
    feed(left, region_a)
    feed(right, region_b)
    left.merge(right)
    left.finalize()

    merged = left.results()
    assert merged.as_dict() == single.results().as_dict()
    assert merged["variantMultiSnpRatio"] == pytest.approx(1 / 3)
    assert merged["processedMultiIndelRatio"] == pytest.approx(1 / 15)
    assert merged["TiTvRatio"] == 0.0
