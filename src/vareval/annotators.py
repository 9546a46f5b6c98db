from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Type

from .header import MetadataLine
from .models import CallRecord, Pileup

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnnotationDescriptor:
    """Declared output of an annotator, as it appears in a file header."""

    key: str
    number: str
    type: str
    description: str

    def __str__(self) -> str:
        return f'{self.key},{self.number},{self.type},"{self.description}"'

    def header_line(self, section: str = "INFO") -> MetadataLine:
        return MetadataLine.structured(
            section,
            {"ID": self.key, "Number": self.number, "Type": self.type, "Description": self.description},
        )


class VariantAnnotator:
    """Per-site metric over one call record and the per-sample pileups at its locus.

    ``annotate`` returns None when the metric does not apply to the site.
    """

    descriptor: AnnotationDescriptor

    @property
    def key(self) -> str:
        return self.descriptor.key

    @property
    def description(self) -> str:
        return str(self.descriptor)

    def annotate(
        self,
        ref_base: str,
        record: CallRecord,
        pileups: Mapping[str, Pileup],
    ) -> Optional[str]:
        raise NotImplementedError


class AlleleBalance(VariantAnnotator):
    """Reference fraction of reads supporting het calls: ref / (ref + alt).

    A single het genotype that is not a plain two-base call, or whose sample has no
    MQ0-free bases, makes the whole site not applicable.
    """

    descriptor = AnnotationDescriptor(
        key="AB",
        number="1",
        type="Float",
        description="Allele Balance for hets (ref/(ref+alt))",
    )

    def annotate(
        self,
        ref_base: str,
        record: CallRecord,
        pileups: Mapping[str, Pileup],
    ) -> Optional[str]:
        if not record.has_genotypes:
            return None
        assert record.genotypes is not None

        ref = ref_base.upper()
        ref_count = 0
        alt_count = 0
        for genotype in record.genotypes.values():
            if not genotype.is_het:
                continue
            if genotype.sample_name is None:
                continue
            pileup = pileups.get(genotype.sample_name)
            if pileup is None:
                continue

            called = genotype.bases
            if len(called) != 2:
                return None

            bases = pileup.mq0_free_bases().upper()
            if not bases:
                return None

            a, b = called[0], called[1]
            a_count = bases.count(a)
            b_count = bases.count(b)
            if a == ref:
                ref_count += a_count
                alt_count += b_count
            else:
                ref_count += b_count
                alt_count += a_count

        if ref_count + alt_count == 0:
            return None

        ratio = ref_count / (ref_count + alt_count)
        return f"{ratio:.2f}"


ANNOTATORS: Dict[str, Type[VariantAnnotator]] = {
    "AB": AlleleBalance,
}


def build_annotators(keys: Optional[Sequence[str]] = None) -> List[VariantAnnotator]:
    """Instantiate annotators by key; None selects every known annotator."""
    selected = list(ANNOTATORS) if keys is None else list(keys)
    unknown = [k for k in selected if k not in ANNOTATORS]
    if unknown:
        raise ValueError(f"Unknown annotation(s): {unknown}. Available: {sorted(ANNOTATORS)}")
    logger.debug("Annotators selected: %s", selected)
    return [ANNOTATORS[k]() for k in selected]
