from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

import pysam

from . import __version__
from .annotators import ANNOTATORS, build_annotators
from .dispatcher import EvaluationDispatcher
from .evaluators import EVALUATORS, build_evaluators
from .report import AnnotationTsvWriter, write_outputs
from .sources import iter_locus_contexts
from .toy_data import make_toy_data
from .utils import ensure_outdir
from .validation import check_bam_index, check_contig_compatibility, check_vcf_index


def _setup_logging(verbosity: int, *, logfile: Optional[Path] = None) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    log_fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    logging.basicConfig(level=level, format=log_fmt, stream=sys.stderr)

    if logfile is not None:
        logfile.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(logfile)
        fh.setLevel(level)
        fh.setFormatter(logging.Formatter(log_fmt))
        logging.getLogger().addHandler(fh)


def _path_exists(p: str) -> str:
    if not Path(p).exists():
        raise argparse.ArgumentTypeError(f"Path does not exist: {p}")
    return p


def _handle_error(err: Exception, *, log_path: Optional[Path] = None) -> int:
    sys.stderr.write(f"{err.__class__.__name__}: {err}\n")
    if log_path is not None:
        sys.stderr.write(f"See log: {log_path}\n")
    return 2


def _vcf_contigs(vcf_path: str) -> List[str]:
    with pysam.VariantFile(vcf_path) as vcf:
        return list(vcf.header.contigs)


def _bam_contigs(bam_path: str) -> List[str]:
    with pysam.AlignmentFile(bam_path, "rb") as bam:
        return list(bam.references)


def _run_dispatcher(dispatcher: EvaluationDispatcher, contexts, *, outdir: Path) -> Optional[Path]:
    """Run the traversal, streaming annotated sites to outdir/annotations.tsv.gz when annotators are set."""
    if not dispatcher.annotators:
        dispatcher.run(contexts)
        return None

    tsv_path = outdir / "annotations.tsv.gz"
    keys = [a.key for a in dispatcher.annotators]
    with AnnotationTsvWriter(tsv_path, keys, header_lines=dispatcher.header_lines()) as writer:
        dispatcher.annotation_sink = writer
        dispatcher.run(contexts)
    return tsv_path


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="vareval",
        description=(
            "vareval: stream variant calls in genomic order through pluggable evaluators "
            "(e.g. MultiallelicSummary) and per-site annotators (e.g. allele balance)."
        ),
    )
    p.add_argument("--version", action="version", version=f"vareval {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    # -----------------
    # eval
    # -----------------
    e = sub.add_parser("eval", help="Evaluate an eval VCF, optionally against a comparison VCF.")
    e.add_argument("--eval", dest="eval_vcf", required=True, type=_path_exists, help="Eval VCF (sorted).")
    e.add_argument("--comp", dest="comp_vcf", type=_path_exists, help="Comparison VCF, e.g. known sites.")
    e.add_argument("--bam", type=_path_exists, help="Indexed BAM for per-sample pileups (annotations).")
    e.add_argument("--reference", type=_path_exists, help="Indexed reference FASTA.")
    e.add_argument("--outdir", required=True, help="Output directory.")
    e.add_argument(
        "--eval-module",
        action="append",
        choices=sorted(EVALUATORS),
        help="Evaluator to run (repeatable). Default: all.",
    )
    e.add_argument(
        "--annotation",
        action="append",
        choices=sorted(ANNOTATORS),
        help="Per-site annotation to compute (repeatable). Default: all when --bam is given.",
    )
    e.add_argument("--require-pass", action="store_true", help="Skip records whose FILTER is not PASS.")
    e.add_argument("--min-baseq", type=int, default=0, help="Minimum base quality for pileup bases.")
    e.add_argument("--no-progress", action="store_true", help="Do not show a progress bar.")
    e.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity (-v/-vv).")

    # -----------------
    # annotate
    # -----------------
    a = sub.add_parser("annotate", help="Compute per-site annotations for a VCF without running evaluators.")
    a.add_argument("--vcf", "--eval", dest="eval_vcf", required=True, type=_path_exists, help="VCF to annotate (sorted).")
    a.add_argument("--bam", required=True, type=_path_exists, help="Indexed BAM for per-sample pileups.")
    a.add_argument("--reference", type=_path_exists, help="Indexed reference FASTA.")
    a.add_argument("--outdir", required=True, help="Output directory.")
    a.add_argument(
        "--annotation",
        action="append",
        choices=sorted(ANNOTATORS),
        help="Annotation to compute (repeatable). Default: all.",
    )
    a.add_argument("--require-pass", action="store_true", help="Skip records whose FILTER is not PASS.")
    a.add_argument("--min-baseq", type=int, default=0, help="Minimum base quality for pileup bases.")
    a.add_argument("--no-progress", action="store_true", help="Do not show a progress bar.")
    a.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity (-v/-vv).")

    # -----------------
    # list-modules
    # -----------------
    sub.add_parser("list-modules", help="List available evaluators and annotations.")

    # -----------------
    # make-toy-data
    # -----------------
    t = sub.add_parser("make-toy-data", help="Generate a tiny reference, BAM and VCFs for demos/tests.")
    t.add_argument("--outdir", required=True, help="Output directory for toy data.")

    return p


# -----------------
# Command handlers
# -----------------

def cmd_eval(args: argparse.Namespace) -> int:
    outdir = Path(args.outdir).expanduser().resolve()
    log_path = outdir / "logs" / "eval.log"
    _setup_logging(args.verbose, logfile=log_path)
    logger = logging.getLogger("vareval")
    logger.info("vareval %s", __version__)

    try:
        ensure_outdir(outdir)
        check_vcf_index(args.eval_vcf)
        eval_contigs = _vcf_contigs(args.eval_vcf)
        if args.comp_vcf:
            check_vcf_index(args.comp_vcf)
            check_contig_compatibility(eval_contigs, _vcf_contigs(args.comp_vcf), other_label="comparison VCF")
        if args.bam:
            check_bam_index(args.bam)
            check_contig_compatibility(eval_contigs, _bam_contigs(args.bam), other_label="BAM")

        evaluators = build_evaluators(args.eval_module)
        if args.annotation:
            if not args.bam:
                raise ValueError("--annotation requires --bam for per-sample pileups")
            annotators = build_annotators(args.annotation)
        elif args.bam:
            annotators = build_annotators()
        else:
            annotators = []

        contexts = iter_locus_contexts(
            args.eval_vcf,
            args.comp_vcf,
            bam=args.bam,
            reference=args.reference,
            require_pass=bool(args.require_pass),
            min_base_quality=int(args.min_baseq),
        )
        dispatcher = EvaluationDispatcher(evaluators, annotators, progress=not args.no_progress)
        tsv_path = _run_dispatcher(dispatcher, contexts, outdir=outdir)

        inputs = {
            "eval_vcf": args.eval_vcf,
            "comp_vcf": args.comp_vcf,
            "bam": args.bam,
            "reference": args.reference,
        }
        outputs = write_outputs(
            dispatcher, outdir=outdir, version=__version__, inputs=inputs, annotations_tsv=tsv_path
        )

        for table in dispatcher.results():
            print(f"## {table.evaluator}")
            for f in table.fields:
                print(f"{f.name}\t{f.formatted}")
        if dispatcher.errors:
            print(f"{len(dispatcher.errors)} locus error(s); see {outputs['summary']}", file=sys.stderr)
        print(outputs["report"])
        return 0
    except Exception as e:
        return _handle_error(e, log_path=log_path)


def cmd_annotate(args: argparse.Namespace) -> int:
    outdir = Path(args.outdir).expanduser().resolve()
    log_path = outdir / "logs" / "annotate.log"
    _setup_logging(args.verbose, logfile=log_path)
    logger = logging.getLogger("vareval")
    logger.info("vareval %s", __version__)

    try:
        ensure_outdir(outdir)
        check_vcf_index(args.eval_vcf)
        check_bam_index(args.bam)
        check_contig_compatibility(_vcf_contigs(args.eval_vcf), _bam_contigs(args.bam), other_label="BAM")

        dispatcher = EvaluationDispatcher(
            [], build_annotators(args.annotation), progress=not args.no_progress
        )
        contexts = iter_locus_contexts(
            args.eval_vcf,
            bam=args.bam,
            reference=args.reference,
            require_pass=bool(args.require_pass),
            min_base_quality=int(args.min_baseq),
        )
        tsv_path = _run_dispatcher(dispatcher, contexts, outdir=outdir)

        for line in dispatcher.header_lines():
            print(line)
        print(f"{dispatcher.annotated_sites} site(s) annotated")
        print(tsv_path)
        return 0
    except Exception as e:
        return _handle_error(e, log_path=log_path)


def cmd_list_modules() -> int:
    print("Evaluators:")
    for name, cls in sorted(EVALUATORS.items()):
        print(f"  {name:22s} order={int(cls.comparison_order)}  {cls.description}")
    print("Annotations:")
    for key, cls in sorted(ANNOTATORS.items()):
        print(f"  {key:22s} {cls.descriptor}")
    return 0


def cmd_make_toy_data(args: argparse.Namespace) -> int:
    try:
        paths = make_toy_data(outdir=args.outdir)
    except Exception as e:
        return _handle_error(e)
    for name, path in sorted(paths.items()):
        print(f"{name}\t{path}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.cmd == "eval":
        return cmd_eval(args)
    if args.cmd == "annotate":
        return cmd_annotate(args)
    if args.cmd == "list-modules":
        return cmd_list_modules()
    if args.cmd == "make-toy-data":
        return cmd_make_toy_data(args)

    parser.error(f"Unknown command: {args.cmd}")
    return 2
