from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Optional, Sequence

logger = logging.getLogger(__name__)


_UCSC_PREFIX = "chr"


def check_vcf_index(vcf_path: str | Path) -> None:
    """Require a tabix index next to a bgzipped VCF; plain .vcf is accepted with a note."""
    vcf = Path(vcf_path)
    if vcf.suffixes[-2:] == [".vcf", ".gz"]:
        tbi = vcf.with_suffix(vcf.suffix + ".tbi")
        csi = vcf.with_suffix(vcf.suffix + ".csi")
        if not (tbi.exists() or csi.exists()):
            raise ValueError(f"VCF is not tabix indexed. Run: tabix -p vcf {vcf}")
    elif vcf.suffix == ".vcf":
        logger.info("VCF %s is uncompressed; it will be read sequentially.", vcf)


def check_bam_index(bam_path: str | Path) -> None:
    """Pileups need random access, so the BAM must be indexed."""
    bam = Path(bam_path)
    if bam.with_suffix(bam.suffix + ".bai").exists() or bam.with_suffix(".bai").exists():
        return
    if bam.with_suffix(bam.suffix + ".csi").exists():
        return
    raise ValueError(f"BAM is not indexed. Run: samtools index {bam}")


def contig_style(contigs: Iterable[str]) -> str:
    """'ucsc' when at least half the names start with 'chr', 'ensembl' otherwise."""
    names = [c for c in contigs if c]
    if not names:
        return "unknown"
    n_chr = sum(1 for c in names if c.startswith(_UCSC_PREFIX))
    return "ucsc" if n_chr >= max(1, len(names) // 2) else "ensembl"


def check_contig_compatibility(
    eval_contigs: Sequence[str],
    other_contigs: Sequence[str],
    *,
    other_label: str,
) -> Optional[str]:
    """Raise when two inputs share no contig names; return a warning text on partial overlap."""
    if not eval_contigs or not other_contigs:
        return None
    shared = set(eval_contigs) & set(other_contigs)
    if not shared:
        raise ValueError(
            f"Contig mismatch between eval VCF ({contig_style(eval_contigs)}) and "
            f"{other_label} ({contig_style(other_contigs)}); e.g. chr1 vs 1. "
            "Rename contigs so both inputs use the same naming."
        )
    missing = [c for c in eval_contigs if c not in shared]
    if missing:
        msg = f"{len(missing)} eval contig(s) are absent from the {other_label}, e.g. {missing[0]}"
        logger.warning(msg)
        return msg
    return None
