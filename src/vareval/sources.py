"""pysam-backed inputs for the dispatcher.

The evaluation core only sees ``LocusContext`` objects. This module builds them from
a sorted eval VCF, an optional sorted comparison VCF, an optional indexed BAM (for
per-sample pileups) and an optional indexed reference FASTA.
"""

from __future__ import annotations

import contextlib
import heapq
import itertools
import logging
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import pysam

from .models import Allele, CallRecord, GenomicLocus, Genotype, LocusContext, Pileup

logger = logging.getLogger(__name__)

_EVAL = 0
_COMP = 1


def _passes_filter(rec: pysam.VariantRecord) -> bool:
    filt = list(rec.filter.keys())
    return len(filt) == 0 or filt == ["PASS"]


def call_record_from_variant(rec: pysam.VariantRecord) -> CallRecord:
    """Convert a pysam VCF record. Sites-only files give records without genotypes."""
    ref = Allele(str(rec.ref), is_reference=True)
    alts = tuple(Allele(str(a)) for a in (rec.alts or ()))

    genotypes: Optional[Dict[str, Genotype]] = None
    if len(rec.header.samples) > 0:
        genotypes = {}
        for name in rec.header.samples:
            called = rec.samples[name].alleles or ()
            if len(called) == 0 or any(b is None for b in called):
                alleles: Tuple[Allele, ...] = ()
            else:
                alleles = tuple(Allele(str(b), is_reference=str(b).upper() == ref.bases) for b in called)
            genotypes[str(name)] = Genotype(alleles=alleles, sample_name=str(name))

    return CallRecord(
        locus=GenomicLocus(str(rec.contig), int(rec.pos)),
        ref=ref,
        alts=alts,
        genotypes=genotypes,
        record_id=rec.id,
    )


class SamplePileupReader:
    """Per-sample base pileups from an indexed BAM.

    Reads are assigned to samples through their read group's ``SM`` tag. Reads without
    a known read group belong to the default sample: the only ``SM`` in the header if
    there is exactly one, else the file stem.
    """

    def __init__(self, bam_path: str | Path, *, min_base_quality: int = 0) -> None:
        self.bam_path = str(bam_path)
        self.min_base_quality = int(min_base_quality)
        self._bam = pysam.AlignmentFile(self.bam_path, "rb")

        read_groups = self._bam.header.to_dict().get("RG", [])
        self._rg_sample: Dict[str, str] = {
            str(rg["ID"]): str(rg.get("SM", rg["ID"])) for rg in read_groups if "ID" in rg
        }
        samples = sorted(set(self._rg_sample.values()))
        self.default_sample = samples[0] if len(samples) == 1 else Path(self.bam_path).name.split(".")[0]
        self._references = set(self._bam.references)

    @property
    def samples(self) -> List[str]:
        return sorted(set(self._rg_sample.values()) | {self.default_sample})

    def _sample_for(self, read: pysam.AlignedSegment) -> str:
        if read.has_tag("RG"):
            return self._rg_sample.get(str(read.get_tag("RG")), self.default_sample)
        return self.default_sample

    def pileups_at(self, contig: str, pos: int) -> Dict[str, Pileup]:
        """Pileups at the 1-based position ``pos``; samples without coverage are absent."""
        if contig not in self._references:
            return {}
        pos0 = pos - 1
        bases: Dict[str, List[str]] = {}
        mapqs: Dict[str, List[int]] = {}

        for column in self._bam.pileup(
            contig,
            pos0,
            pos0 + 1,
            truncate=True,
            min_base_quality=self.min_base_quality,
        ):
            if column.reference_pos != pos0:
                continue
            for pread in column.pileups:
                if pread.is_del or pread.is_refskip or pread.query_position is None:
                    continue
                read = pread.alignment
                seq = read.query_sequence
                if seq is None:
                    continue
                sample = self._sample_for(read)
                bases.setdefault(sample, []).append(seq[pread.query_position])
                mapqs.setdefault(sample, []).append(int(read.mapping_quality))

        return {s: Pileup(bases="".join(b), mapping_qualities=tuple(mapqs[s])) for s, b in bases.items()}

    def close(self) -> None:
        self._bam.close()

    def __enter__(self) -> "SamplePileupReader":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


def _same_class(a: CallRecord, b: CallRecord) -> bool:
    ta, tb = a.variant_type, b.variant_type
    return ta is tb or (ta.is_indel and tb.is_indel)


def _pick_comp(eval_record: Optional[CallRecord], comps: Sequence[CallRecord]) -> Optional[CallRecord]:
    if not comps:
        return None
    if eval_record is not None:
        for comp in comps:
            if _same_class(eval_record, comp):
                return comp
    return comps[0]


class _ContigOrder:
    """Contig ranks from the VCF headers; unseen contigs rank after all known ones."""

    def __init__(self, names: Sequence[str], lengths: Dict[str, Optional[int]]) -> None:
        self.names: List[str] = list(names)
        self.lengths = lengths
        self._rank = {n: i for i, n in enumerate(self.names)}

    def rank(self, contig: str) -> int:
        if contig not in self._rank:
            self._rank[contig] = len(self.names)
            self.names.append(contig)
        return self._rank[contig]


def _header_contigs(vcfs: Sequence[pysam.VariantFile]) -> _ContigOrder:
    names: List[str] = []
    lengths: Dict[str, Optional[int]] = {}
    for vcf in vcfs:
        for name, contig in vcf.header.contigs.items():
            if name not in lengths:
                names.append(str(name))
                lengths[str(name)] = contig.length
    return _ContigOrder(names, lengths)


def _span(contig: str, length: Optional[int], last_pos: int) -> Optional[LocusContext]:
    """Span context covering ``last_pos+1 .. length`` of a contig, if anything remains."""
    if length is None or length <= last_pos:
        return None
    return LocusContext(locus=GenomicLocus(contig, length), ref_base=None, skipped_bases=length - last_pos)


def iter_locus_contexts(
    eval_vcf: str | Path,
    comp_vcf: Optional[str | Path] = None,
    *,
    bam: Optional[str | Path] = None,
    reference: Optional[str | Path] = None,
    require_pass: bool = False,
    min_base_quality: int = 0,
) -> Iterator[LocusContext]:
    """Yield one LocusContext per distinct variant position, in genomic order.

    Positions between visited loci are reported through ``skipped_bases``. When a
    contig length is known from the VCF headers, span contexts (without a reference
    base) account for the bases after the last variant of each contig and for
    contigs without any variant.
    """
    with contextlib.ExitStack() as stack:
        eval_file = stack.enter_context(pysam.VariantFile(str(eval_vcf)))
        files = [eval_file]
        if comp_vcf is not None:
            files.append(stack.enter_context(pysam.VariantFile(str(comp_vcf))))
        fasta = stack.enter_context(pysam.FastaFile(str(reference))) if reference is not None else None
        pileup_reader = (
            stack.enter_context(SamplePileupReader(bam, min_base_quality=min_base_quality))
            if bam is not None
            else None
        )

        order = _header_contigs(files)

        def _stream(vcf: pysam.VariantFile, source: int) -> Iterator[Tuple[Tuple[int, int], int, CallRecord]]:
            for rec in vcf:
                if require_pass and not _passes_filter(rec):
                    continue
                call = call_record_from_variant(rec)
                yield (order.rank(call.locus.contig), call.locus.pos), source, call

        streams = [_stream(f, i) for i, f in enumerate(files)]
        merged = heapq.merge(*streams, key=lambda item: (item[0], item[1]))

        prev_contig: Optional[str] = None
        prev_pos = 0
        for (rank, pos), group in itertools.groupby(merged, key=lambda item: item[0]):
            items = list(group)
            contig = items[0][2].locus.contig

            if contig != prev_contig:
                if prev_contig is not None:
                    tail = _span(prev_contig, order.lengths.get(prev_contig), prev_pos)
                    if tail is not None:
                        yield tail
                first = 0 if prev_contig is None else order.rank(prev_contig) + 1
                for name in order.names[first:rank]:
                    empty = _span(name, order.lengths.get(name), 0)
                    if empty is not None:
                        yield empty
                prev_contig, prev_pos = contig, 0

            evals = [c for _, source, c in items if source == _EVAL]
            comps = [c for _, source, c in items if source == _COMP]
            if len(evals) > 1:
                logger.debug("%d eval records at %s:%d; using the first", len(evals), contig, pos)
            eval_record = evals[0] if evals else None
            comp_record = _pick_comp(eval_record, comps)

            anchor = eval_record if eval_record is not None else comp_record
            assert anchor is not None
            if fasta is not None:
                ref_base = fasta.fetch(contig, pos - 1, pos).upper()
            else:
                ref_base = anchor.ref.bases[:1]

            pileups: Dict[str, Pileup] = {}
            if pileup_reader is not None and eval_record is not None:
                pileups = pileup_reader.pileups_at(contig, pos)

            yield LocusContext(
                locus=GenomicLocus(contig, pos),
                ref_base=ref_base or None,
                skipped_bases=max(0, pos - prev_pos - 1),
                eval_record=eval_record,
                comp_record=comp_record,
                pileups=pileups,
            )
            prev_pos = pos

        if prev_contig is not None:
            tail = _span(prev_contig, order.lengths.get(prev_contig), prev_pos)
            if tail is not None:
                yield tail
            first = order.rank(prev_contig) + 1
        else:
            first = 0
        for name in order.names[first:]:
            empty = _span(name, order.lengths.get(name), 0)
            if empty is not None:
                yield empty
