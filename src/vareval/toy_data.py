from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Sequence, Tuple

import pysam

from .utils import ensure_outdir, write_json

TOY_CONTIG = "chr1"
TOY_SAMPLE = "NA1"
TOY_REF_SEQ = ("ACGT" * 50)[:200]

# (pos0, alleles, GT) for the eval call set
TOY_EVAL_SITES: List[Tuple[int, Tuple[str, ...], Tuple[int, int]]] = [
    (40, ("A", "G"), (0, 1)),  # biallelic het SNP
    (60, ("A", "G", "T"), (1, 2)),  # triallelic SNP, one transition + one transversion
    (80, ("AC", "A", "ACTT"), (1, 2)),  # multi-allelic indel
    (120, ("AC", "GT"), (0, 1)),  # MNP, not evaluated by MultiallelicSummary
    (160, ("A", "C"), (0, 0)),  # monomorphic in samples
]

# (pos0, alleles) for the comparison call set
TOY_COMP_SITES: List[Tuple[int, Tuple[str, ...]]] = [
    (40, ("A", "G")),
    (60, ("A", "G")),
    (100, ("A", "C")),
]


def _write_fasta(path: Path, contig: str, seq: str) -> None:
    lines = [f">{contig}"]
    for i in range(0, len(seq), 60):
        lines.append(seq[i : i + 60])
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def _make_read(name: str, start0: int, seq: str, *, rg: str, mapq: int = 60) -> pysam.AlignedSegment:
    a = pysam.AlignedSegment()
    a.query_name = name
    a.query_sequence = seq
    a.flag = 0
    a.reference_id = 0
    a.reference_start = start0
    a.mapping_quality = mapq
    a.cigartuples = [(0, len(seq))]
    a.query_qualities = pysam.qualitystring_to_array("I" * len(seq))
    a.set_tag("RG", rg)
    return a


def _write_vcf(
    path: Path,
    sites: Sequence[Tuple[int, Tuple[str, ...], Tuple[int, int] | None]],
    *,
    samples: Sequence[str],
) -> Path:
    header = pysam.VariantHeader()
    header.add_meta("fileformat", "VCFv4.2")
    header.contigs.add(TOY_CONTIG, length=len(TOY_REF_SEQ))
    for s in samples:
        header.add_sample(s)
    if samples:
        header.formats.add("GT", number=1, type="String", description="Genotype")

    with pysam.VariantFile(str(path), "w", header=header) as vcf:
        for pos0, alleles, gt in sites:
            rec = vcf.new_record(
                contig=TOY_CONTIG,
                start=pos0,
                stop=pos0 + len(alleles[0]),
                alleles=alleles,
                qual=60,
                filter="PASS",
            )
            if samples and gt is not None:
                rec.samples[0]["GT"] = gt
            vcf.write(rec)

    vcf_gz = path.with_suffix(".vcf.gz")
    pysam.tabix_compress(str(path), str(vcf_gz), force=True)
    pysam.tabix_index(str(vcf_gz), preset="vcf", force=True)
    return vcf_gz


def make_toy_data(*, outdir: str | Path) -> Dict[str, str]:
    """Create a tiny reference, BAM, eval VCF and comparison VCF for demos/tests.

    The BAM carries ten reads for sample NA1 over positions 21-78 (1-based). At
    position 41 four reads show G over a reference A; at position 61 reads alternate
    between G and T.

    Returns
    -------
    dict
        Paths to the generated files.
    """
    outdir_p = ensure_outdir(outdir)

    ref_fa = outdir_p / "toy_ref.fa"
    _write_fasta(ref_fa, TOY_CONTIG, TOY_REF_SEQ)
    pysam.faidx(str(ref_fa))

    bam_path = outdir_p / "sample.bam"
    header = {
        "HD": {"VN": "1.6", "SO": "coordinate"},
        "SQ": [{"SN": TOY_CONTIG, "LN": len(TOY_REF_SEQ)}],
        "RG": [{"ID": "rg1", "SM": TOY_SAMPLE}],
    }

    reads: List[pysam.AlignedSegment] = []
    for i in range(10):
        start0 = 20 + i
        seq = list(TOY_REF_SEQ[start0 : start0 + 50])
        if i < 4:
            seq[40 - start0] = "G"
        seq[60 - start0] = "G" if i % 2 == 0 else "T"
        reads.append(_make_read(f"r{i}", start0, "".join(seq), rg="rg1"))

    with pysam.AlignmentFile(str(bam_path), "wb", header=header) as bam:
        for r in reads:
            bam.write(r)
    pysam.index(str(bam_path))

    eval_vcf = _write_vcf(outdir_p / "eval.vcf", TOY_EVAL_SITES, samples=[TOY_SAMPLE])
    comp_vcf = _write_vcf(
        outdir_p / "comp.vcf",
        [(pos0, alleles, None) for pos0, alleles in TOY_COMP_SITES],
        samples=[],
    )

    summary = {
        "ref_fa": str(ref_fa),
        "bam": str(bam_path),
        "eval_vcf": str(eval_vcf),
        "comp_vcf": str(comp_vcf),
        "outdir": str(outdir_p),
    }
    write_json(outdir_p / "toy_summary.json", summary)
    return summary
