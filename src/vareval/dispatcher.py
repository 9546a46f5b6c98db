from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set

from tqdm import tqdm

from .annotators import VariantAnnotator
from .evaluators import ComparisonOrder, EvaluationError, EvaluationTable, VariantEvaluator
from .header import MetadataLine, format_metadata_block
from .models import GenomicLocus, LocusContext

logger = logging.getLogger(__name__)


class LocusOrderError(ValueError):
    """Raised when loci arrive out of genomic order."""


@dataclass(frozen=True)
class LocusError:
    """An evaluator failure isolated to one locus."""

    locus: GenomicLocus
    evaluator: str
    message: str

    def __str__(self) -> str:
        return f"{self.locus} [{self.evaluator}] {self.message}"


@dataclass(frozen=True)
class SiteAnnotation:
    locus: GenomicLocus
    values: Dict[str, Optional[str]]


class EvaluationDispatcher:
    """Routes visited loci to evaluators by their comparison order and to annotators.

    Loci must arrive in non-decreasing order within a contig, and a contig that has
    been left may not be revisited. Evaluator failures of type ``EvaluationError``
    are confined to the evaluator and locus that raised them.

    With an ``annotation_sink`` each annotated site is handed over as soon as it is
    computed and only counted here; without one, sites are kept in ``annotations``.
    """

    def __init__(
        self,
        evaluators: Sequence[VariantEvaluator],
        annotators: Sequence[VariantAnnotator] = (),
        *,
        progress: bool = False,
        annotation_sink: Optional[Callable[[SiteAnnotation], None]] = None,
    ) -> None:
        names = [e.name for e in evaluators]
        if len(set(names)) != len(names):
            raise ValueError(f"Evaluator names must be unique: {names}")

        self.evaluators: List[VariantEvaluator] = list(evaluators)
        self.annotators: List[VariantAnnotator] = list(annotators)
        self.progress = progress
        self.annotation_sink = annotation_sink

        self.errors: List[LocusError] = []
        self.annotations: List[SiteAnnotation] = []
        self.annotated_sites = 0
        self.loci_processed = 0

        self._last_locus: Optional[GenomicLocus] = None
        self._finished_contigs: Set[str] = set()
        self._cancelled = False
        self._finalized = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def finalized(self) -> bool:
        return self._finalized

    def cancel(self) -> None:
        """Request that ``run`` stop before the next locus."""
        self._cancelled = True

    def _check_order(self, locus: GenomicLocus) -> None:
        last = self._last_locus
        if last is not None and locus.contig != last.contig:
            self._finished_contigs.add(last.contig)
        if locus.contig in self._finished_contigs:
            raise LocusOrderError(f"Contig {locus.contig} revisited at {locus} after leaving it")
        if last is not None and locus.contig == last.contig and locus.pos < last.pos:
            raise LocusOrderError(f"Locus {locus} arrived after {last}")
        self._last_locus = locus

    def process(self, ctx: LocusContext) -> None:
        """Feed one visited locus to every evaluator and annotator."""
        if self._finalized:
            raise RuntimeError("Dispatcher was already finalized")
        self._check_order(ctx.locus)
        self.loci_processed += 1

        for evaluator in self.evaluators:
            try:
                self._update(evaluator, ctx)
            except EvaluationError as e:
                err = LocusError(locus=ctx.locus, evaluator=evaluator.name, message=str(e))
                logger.warning("Evaluator failure at %s: %s", ctx.locus, err.message)
                self.errors.append(err)

        if self.annotators and ctx.eval_record is not None and ctx.ref_base is not None:
            values = {
                a.key: a.annotate(ctx.ref_base, ctx.eval_record, ctx.pileups) for a in self.annotators
            }
            site = SiteAnnotation(locus=ctx.locus, values=values)
            self.annotated_sites += 1
            if self.annotation_sink is not None:
                self.annotation_sink(site)
            else:
                self.annotations.append(site)

    @staticmethod
    def _update(evaluator: VariantEvaluator, ctx: LocusContext) -> None:
        evaluator.update_locus(ctx.locus, ctx.ref_base, ctx.skipped_bases)
        if ctx.eval_record is None:
            return
        order = evaluator.comparison_order
        if order == ComparisonOrder.EVAL:
            evaluator.update_eval(ctx.eval_record)
        elif order == ComparisonOrder.EVAL_AND_COMP:
            evaluator.update_pair(ctx.eval_record, ctx.comp_record)

    def run(self, contexts: Iterable[LocusContext], *, total: Optional[int] = None) -> bool:
        """Process all contexts and finalize.

        Returns False if the traversal was cancelled; accumulated state is then left
        unfinalized and should be discarded.
        """
        it: Iterable[LocusContext] = contexts
        if self.progress:
            it = tqdm(it, unit="locus", desc="Evaluating loci", total=total)

        for ctx in it:
            if self._cancelled:
                logger.warning("Traversal cancelled after %d loci; discarding partial results", self.loci_processed)
                return False
            self.process(ctx)

        if self._cancelled:
            return False
        self.finalize()
        return True

    def merge(self, other: "EvaluationDispatcher") -> None:
        """Fold another region's dispatcher into this one before finalization."""
        if self._finalized or other._finalized:
            raise RuntimeError("Dispatchers must be merged before finalization")
        mine = {e.name: e for e in self.evaluators}
        theirs = {e.name: e for e in other.evaluators}
        if set(mine) != set(theirs):
            raise ValueError(f"Evaluator sets differ: {sorted(mine)} vs {sorted(theirs)}")
        for name, evaluator in mine.items():
            evaluator.merge(theirs[name])
        self.errors.extend(other.errors)
        self.annotations.extend(other.annotations)
        self.annotated_sites += other.annotated_sites
        self.loci_processed += other.loci_processed

    def finalize(self) -> None:
        for evaluator in self.evaluators:
            evaluator.finalize()
        self._finalized = True
        logger.info(
            "Finalized %d evaluator(s) over %d loci (%d locus error(s))",
            len(self.evaluators),
            self.loci_processed,
            len(self.errors),
        )

    def results(self) -> List[EvaluationTable]:
        return [e.results() for e in self.evaluators]

    def header_lines(self) -> List[str]:
        lines: List[MetadataLine] = [a.descriptor.header_line() for a in self.annotators]
        return format_metadata_block(lines)
