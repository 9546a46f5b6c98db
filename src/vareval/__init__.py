"""vareval: streaming evaluation and annotation of genomic variant call sets.

Loci are visited in genomic order and routed to evaluators (accumulating summary
statistics such as MultiallelicSummary) and per-site annotators (such as allele
balance). Most users should use the CLI:

    vareval eval --eval calls.vcf.gz --comp known.vcf.gz --bam sample.bam --outdir ...

"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.1.0"
