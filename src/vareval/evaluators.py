from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, ClassVar, Dict, List, Optional, Sequence, Tuple, Type

import numpy as np

from .models import Allele, CallRecord, GenomicLocus, VariantType

logger = logging.getLogger(__name__)

_PURINES = frozenset("AG")
_PYRIMIDINES = frozenset("CT")


class EvaluationError(RuntimeError):
    """An evaluator could not process one locus."""


class UnsupportedVariantType(EvaluationError):
    """Raised when a record's variant class is neither SNP nor indel."""


class ComparisonOrder(IntEnum):
    """Number of call sets an evaluator consumes per locus."""

    LOCUS = 0
    EVAL = 1
    EVAL_AND_COMP = 2


@dataclass(frozen=True)
class DataPoint:
    """One report field: ``attr`` is the evaluator attribute holding its value.

    ``kind`` is ``"count"`` for accumulated counters (summed on merge) and
    ``"derived"`` for values computed at finalization.
    """

    name: str
    attr: str
    description: str
    fmt: Optional[str] = None
    kind: str = "count"


@dataclass(frozen=True)
class ReportField:
    name: str
    value: Any
    description: str
    fmt: Optional[str] = None

    @property
    def formatted(self) -> str:
        if isinstance(self.value, str):
            return self.value
        if isinstance(self.value, float) and math.isnan(self.value):
            return "NaN"
        if self.fmt is not None:
            return self.fmt % self.value
        return str(self.value)


@dataclass(frozen=True)
class EvaluationTable:
    evaluator: str
    description: str
    fields: Tuple[ReportField, ...]

    def as_dict(self) -> Dict[str, Any]:
        return {f.name: f.value for f in self.fields}

    def __getitem__(self, name: str) -> Any:
        for f in self.fields:
            if f.name == name:
                return f.value
        raise KeyError(name)


def ratio(numerator: float, denominator: float) -> float:
    """Float division; a zero denominator gives NaN rather than an error."""
    if denominator == 0:
        return float(np.nan)
    return float(np.float64(numerator) / np.float64(denominator))


def is_transition(ref: Allele, alt: Allele) -> bool:
    """True for purine<->purine or pyrimidine<->pyrimidine changes of the first base."""
    r = ref.bases[:1]
    a = alt.bases[:1]
    return (r in _PURINES and a in _PURINES) or (r in _PYRIMIDINES and a in _PYRIMIDINES)


class VariantEvaluator:
    """Accumulates counts over a traversal and derives summary values once at the end.

    Subclasses declare ``comparison_order`` and a static ``data_points`` table, and
    override the update methods matching their order. ``update_locus`` is called for
    every visited locus regardless of order.
    """

    name: ClassVar[str] = ""
    description: ClassVar[str] = ""
    comparison_order: ClassVar[ComparisonOrder] = ComparisonOrder.EVAL
    data_points: ClassVar[Tuple[DataPoint, ...]] = ()

    def __init__(self) -> None:
        self.finalized = False

    def _check_open(self) -> None:
        if self.finalized:
            raise RuntimeError(f"{self.name} was already finalized; no further updates are allowed")

    def update_locus(self, locus: GenomicLocus, ref_base: Optional[str], skipped_bases: int) -> None:
        """Order-0 update; the default only guards against use after finalization."""
        self._check_open()

    def update_eval(self, eval_record: CallRecord) -> None:
        raise NotImplementedError(f"{self.name} does not accept single call sets")

    def update_pair(self, eval_record: CallRecord, comp_record: Optional[CallRecord]) -> None:
        raise NotImplementedError(f"{self.name} does not accept paired call sets")

    def finalize(self) -> None:
        """Derive ratios from the counters; safe to repeat."""
        if self.finalized:
            logger.debug("%s finalized again; re-deriving values", self.name)
        self._derive()
        self.finalized = True

    def _derive(self) -> None:
        pass

    def counters(self) -> Dict[str, Any]:
        return {dp.name: getattr(self, dp.attr) for dp in self.data_points if dp.kind == "count"}

    def merge(self, other: "VariantEvaluator") -> None:
        """Add another region's counters into this one. Both sides must be unfinalized."""
        if type(other) is not type(self):
            raise TypeError(f"Cannot merge {type(other).__name__} into {type(self).__name__}")
        if self.finalized or other.finalized:
            raise RuntimeError("Evaluators must be merged before finalization")
        for dp in self.data_points:
            if dp.kind == "count":
                setattr(self, dp.attr, getattr(self, dp.attr) + getattr(other, dp.attr))

    def results(self) -> EvaluationTable:
        if not self.finalized:
            raise RuntimeError(f"{self.name} results are only available after finalization")
        fields = tuple(
            ReportField(name=dp.name, value=getattr(self, dp.attr), description=dp.description, fmt=dp.fmt)
            for dp in self.data_points
        )
        return EvaluationTable(evaluator=self.name, description=self.description, fields=fields)


def _novelty_rate(total: int, known: int) -> str:
    if total == 0:
        return "NA"
    return "%.2f" % ((total - known) / total)


class MultiallelicSummary(VariantEvaluator):
    """SNP/indel counts with a focus on multi-allelic sites.

    Transition/transversion and novelty accounting only run for multi-allelic SNPs.
    Indel novelty is not tracked: the indel "known" counters stay at zero.
    """

    name = "MultiallelicSummary"
    description = "Evaluation summary for multi-allelic variants"
    comparison_order = ComparisonOrder.EVAL_AND_COMP
    data_points = (
        DataPoint("nProcessedLoci", "n_processed_loci", "Number of processed loci"),
        DataPoint("nSNPs", "n_snps", "Number of SNPs"),
        DataPoint("nMultiSNPs", "n_multi_snps", "Number of multi-allelic SNPs"),
        DataPoint(
            "processedMultiSnpRatio",
            "processed_multi_snp_ratio",
            "% processed sites that are multi-allelic SNPs",
            fmt="%.5f",
            kind="derived",
        ),
        DataPoint(
            "variantMultiSnpRatio",
            "variant_multi_snp_ratio",
            "% SNP sites that are multi-allelic",
            fmt="%.3f",
            kind="derived",
        ),
        DataPoint("nIndels", "n_indels", "Number of Indels"),
        DataPoint("nMultiIndels", "n_multi_indels", "Number of multi-allelic Indels"),
        DataPoint(
            "processedMultiIndelRatio",
            "processed_multi_indel_ratio",
            "% processed sites that are multi-allelic Indels",
            fmt="%.5f",
            kind="derived",
        ),
        DataPoint(
            "variantMultiIndelRatio",
            "variant_multi_indel_ratio",
            "% Indel sites that are multi-allelic",
            fmt="%.3f",
            kind="derived",
        ),
        DataPoint("nTi", "n_ti", "Number of Transitions"),
        DataPoint("nTv", "n_tv", "Number of Transversions"),
        DataPoint("TiTvRatio", "titv_ratio", "Overall TiTv ratio", fmt="%.2f", kind="derived"),
        DataPoint("knownSNPsPartial", "known_snps_partial", "Multi-allelic SNPs partially known"),
        DataPoint("knownSNPsComplete", "known_snps_complete", "Multi-allelic SNPs completely known"),
        DataPoint("SNPNoveltyRate", "snp_novelty_rate", "Multi-allelic SNP Novelty Rate", kind="derived"),
        DataPoint("knownIndelsPartial", "known_indels_partial", "Multi-allelic Indels partially known"),
        DataPoint("knownIndelsComplete", "known_indels_complete", "Multi-allelic Indels completely known"),
        DataPoint("indelNoveltyRate", "indel_novelty_rate", "Multi-allelic Indel Novelty Rate", kind="derived"),
    )

    def __init__(self) -> None:
        super().__init__()
        self.n_processed_loci = 0
        self.n_snps = 0
        self.n_multi_snps = 0
        self.n_indels = 0
        self.n_multi_indels = 0
        self.n_ti = 0
        self.n_tv = 0
        self.known_snps_partial = 0
        self.known_snps_complete = 0
        self.known_indels_partial = 0
        self.known_indels_complete = 0

        self.processed_multi_snp_ratio = 0.0
        self.variant_multi_snp_ratio = 0.0
        self.processed_multi_indel_ratio = 0.0
        self.variant_multi_indel_ratio = 0.0
        self.titv_ratio = 0.0
        self.snp_novelty_rate = "NA"
        self.indel_novelty_rate = "NA"

    def update_locus(self, locus: GenomicLocus, ref_base: Optional[str], skipped_bases: int) -> None:
        self._check_open()
        self.n_processed_loci += skipped_bases + (0 if ref_base is None else 1)

    def update_pair(self, eval_record: Optional[CallRecord], comp_record: Optional[CallRecord]) -> None:
        self._check_open()
        if eval_record is None or eval_record.is_monomorphic_in_samples:
            return

        vtype = eval_record.variant_type
        if vtype is VariantType.SNP:
            self.n_snps += 1
            if not eval_record.is_biallelic:
                self.n_multi_snps += 1
                self._count_pairwise_titv(eval_record)
                self._count_snp_novelty(eval_record, comp_record)
        elif vtype.is_indel:
            self.n_indels += 1
            if not eval_record.is_biallelic:
                self.n_multi_indels += 1
                self._count_indel_novelty(eval_record, comp_record)
        else:
            raise UnsupportedVariantType(
                f"Unexpected variant type {vtype.value} at {eval_record.locus}"
            )

    def _count_pairwise_titv(self, record: CallRecord) -> None:
        for alt in record.alts:
            if is_transition(record.ref, alt):
                self.n_ti += 1
            else:
                self.n_tv += 1

    def _count_snp_novelty(self, eval_record: CallRecord, comp_record: Optional[CallRecord]) -> None:
        if comp_record is None:
            return
        known_alts = set(comp_record.alts)
        known = sum(1 for alt in eval_record.alts if alt in known_alts)
        if known == len(eval_record.alts):
            self.known_snps_complete += 1
        elif known > 0:
            self.known_snps_partial += 1

    def _count_indel_novelty(self, eval_record: CallRecord, comp_record: Optional[CallRecord]) -> None:
        # TODO: classify multi-allelic indels against the comparison set; knownIndels* stay 0 until then.
        return

    def _derive(self) -> None:
        self.processed_multi_snp_ratio = ratio(self.n_multi_snps, self.n_processed_loci)
        self.variant_multi_snp_ratio = ratio(self.n_multi_snps, self.n_snps)
        self.processed_multi_indel_ratio = ratio(self.n_multi_indels, self.n_processed_loci)
        self.variant_multi_indel_ratio = ratio(self.n_multi_indels, self.n_indels)
        self.titv_ratio = ratio(self.n_ti, self.n_tv)

        self.snp_novelty_rate = _novelty_rate(
            self.n_multi_snps, self.known_snps_partial + self.known_snps_complete
        )
        # Uses the SNP multi-allelic count as the total, matching the established report.
        self.indel_novelty_rate = _novelty_rate(
            self.n_multi_snps, self.known_indels_partial + self.known_indels_complete
        )


EVALUATORS: Dict[str, Type[VariantEvaluator]] = {
    MultiallelicSummary.name: MultiallelicSummary,
}


def build_evaluators(names: Optional[Sequence[str]] = None) -> List[VariantEvaluator]:
    """Instantiate evaluators by name; None selects every known evaluator."""
    selected = list(EVALUATORS) if names is None else list(names)
    unknown = [n for n in selected if n not in EVALUATORS]
    if unknown:
        raise ValueError(f"Unknown evaluator(s): {unknown}. Available: {sorted(EVALUATORS)}")
    logger.debug("Evaluators selected: %s", selected)
    return [EVALUATORS[n]() for n in selected]
