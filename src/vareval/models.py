from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Mapping, Optional, Tuple


class VariantType(str, Enum):
    NO_VARIATION = "NO_VARIATION"
    SNP = "SNP"
    MNP = "MNP"
    INSERTION = "INSERTION"
    DELETION = "DELETION"
    INDEL = "INDEL"  # indel alternates in both directions
    MIXED = "MIXED"

    @property
    def is_indel(self) -> bool:
        return self in (VariantType.INSERTION, VariantType.DELETION, VariantType.INDEL)


class Zygosity(str, Enum):
    HOM_REF = "HOM_REF"
    HET = "HET"
    HOM_VAR = "HOM_VAR"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True, order=True)
class GenomicLocus:
    """A single reference coordinate. ``pos`` is 1-based, as in VCF."""

    contig: str
    pos: int

    def __str__(self) -> str:
        return f"{self.contig}:{self.pos}"


@dataclass(frozen=True)
class Allele:
    """An allele; equality and hashing use the base string only."""

    bases: str
    is_reference: bool = field(default=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "bases", self.bases.upper())

    @property
    def is_symbolic(self) -> bool:
        return self.bases.startswith("<") or "[" in self.bases or "]" in self.bases

    def __str__(self) -> str:
        return self.bases + ("*" if self.is_reference else "")


@dataclass(frozen=True)
class Genotype:
    """Called alleles for one sample.

    Attributes
    ----------
    alleles:
        Called alleles. An empty tuple is a no-call.
    sample_name:
        Sample the call belongs to, or None when the genotype is not tied to a sample.
    """

    alleles: Tuple[Allele, ...]
    sample_name: Optional[str] = None

    @property
    def zygosity(self) -> Zygosity:
        if not self.alleles:
            return Zygosity.UNKNOWN
        if len(set(self.alleles)) > 1:
            return Zygosity.HET
        if self.alleles[0].is_reference:
            return Zygosity.HOM_REF
        return Zygosity.HOM_VAR

    @property
    def is_het(self) -> bool:
        return self.zygosity is Zygosity.HET

    @property
    def bases(self) -> str:
        """Concatenated called bases, e.g. ``"AG"`` for an A/G call."""
        return "".join(a.bases for a in self.alleles)


def classify_variant(ref: Allele, alts: Tuple[Allele, ...]) -> VariantType:
    if not alts:
        return VariantType.NO_VARIATION
    if any(a.is_symbolic for a in alts):
        return VariantType.MIXED

    ref_len = len(ref.bases)
    alt_lens = [len(a.bases) for a in alts]

    if ref_len == 1 and all(n == 1 for n in alt_lens):
        return VariantType.SNP
    if all(n == ref_len for n in alt_lens):
        return VariantType.MNP
    if all(n > ref_len for n in alt_lens):
        return VariantType.INSERTION
    if all(n < ref_len for n in alt_lens):
        return VariantType.DELETION
    if all(n != ref_len for n in alt_lens):
        return VariantType.INDEL
    return VariantType.MIXED


@dataclass(frozen=True)
class CallRecord:
    """A variant call at one locus.

    ``genotypes`` is None for sites-only records (not genotype-backed); otherwise a
    mapping of sample name to Genotype, possibly empty.
    """

    locus: GenomicLocus
    ref: Allele
    alts: Tuple[Allele, ...] = ()
    genotypes: Optional[Mapping[str, Genotype]] = None
    record_id: Optional[str] = None
    monomorphic: Optional[bool] = None

    def __post_init__(self) -> None:
        if not self.ref.is_reference:
            object.__setattr__(self, "ref", Allele(self.ref.bases, is_reference=True))
        if len(set(self.alts)) != len(self.alts):
            raise ValueError(f"Duplicate alternate alleles at {self.locus}: {[a.bases for a in self.alts]}")
        if self.ref in self.alts:
            raise ValueError(f"Alternate allele equals the reference at {self.locus}: {self.ref.bases}")

    @property
    def variant_type(self) -> VariantType:
        return classify_variant(self.ref, self.alts)

    @property
    def is_biallelic(self) -> bool:
        return len(self.alts) == 1

    @property
    def has_genotypes(self) -> bool:
        return self.genotypes is not None and len(self.genotypes) > 0

    @property
    def is_monomorphic_in_samples(self) -> bool:
        if self.monomorphic is not None:
            return self.monomorphic
        if not self.alts:
            return True
        if not self.has_genotypes:
            return False
        assert self.genotypes is not None
        return not any(
            not a.is_reference for g in self.genotypes.values() for a in g.alleles
        )


@dataclass(frozen=True)
class Pileup:
    """Bases observed at one locus for one sample, in read order.

    ``mapping_qualities`` is either empty or aligned with ``bases``.
    """

    bases: str = ""
    mapping_qualities: Tuple[int, ...] = ()

    def __post_init__(self) -> None:
        if self.mapping_qualities and len(self.mapping_qualities) != len(self.bases):
            raise ValueError("mapping_qualities must be empty or aligned with bases")

    def __len__(self) -> int:
        return len(self.bases)

    def mq0_free_bases(self) -> str:
        if not self.mapping_qualities:
            return self.bases
        return "".join(b for b, mq in zip(self.bases, self.mapping_qualities) if mq > 0)


@dataclass(frozen=True)
class LocusContext:
    """Everything the traversal hands over for one visited locus.

    Attributes
    ----------
    ref_base:
        Reference base at ``locus``, or None when the context only reports a span of
        skipped bases.
    skipped_bases:
        Reference positions passed over since the previous visited locus.
    """

    locus: GenomicLocus
    ref_base: Optional[str] = None
    skipped_bases: int = 0
    eval_record: Optional[CallRecord] = None
    comp_record: Optional[CallRecord] = None
    pileups: Mapping[str, Pileup] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.skipped_bases < 0:
            raise ValueError(f"skipped_bases must be >= 0 at {self.locus}")


def make_record(
    contig: str,
    pos: int,
    ref: str,
    alts: Tuple[str, ...] = (),
    *,
    genotypes: Optional[Dict[str, Tuple[str, ...]]] = None,
    record_id: Optional[str] = None,
) -> CallRecord:
    """Build a CallRecord from plain strings; genotype alleles are given as base strings."""
    ref_allele = Allele(ref, is_reference=True)
    gts: Optional[Dict[str, Genotype]] = None
    if genotypes is not None:
        gts = {}
        for sample, called in genotypes.items():
            alleles = tuple(Allele(b, is_reference=b.upper() == ref_allele.bases) for b in called)
            gts[sample] = Genotype(alleles=alleles, sample_name=sample)
    return CallRecord(
        locus=GenomicLocus(contig, pos),
        ref=ref_allele,
        alts=tuple(Allele(a) for a in alts),
        genotypes=gts,
        record_id=record_id,
    )
