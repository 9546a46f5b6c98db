import gzip
import json
import subprocess
import sys
from pathlib import Path

from vareval.cli import build_parser, main
from vareval.dispatcher import SiteAnnotation
from vareval.models import GenomicLocus
from vareval.report import AnnotationTsvWriter
from vareval.toy_data import make_toy_data


def _run_cli(args: list[str]) -> subprocess.CompletedProcess:
    return subprocess.run(
        [sys.executable, "-m", "vareval"] + args,
        check=False,
        capture_output=True,
        text=True,
    )


def test_cli_help() -> None:
    cp = subprocess.run(
        [sys.executable, "-m", "vareval", "--help"],
        check=True,
        capture_output=True,
        text=True,
    )
    assert "vareval" in cp.stdout.lower()


def test_list_modules(capsys) -> None:
    assert main(["list-modules"]) == 0
    out = capsys.readouterr().out
    assert "MultiallelicSummary" in out
    assert "order=2" in out
    assert 'AB,1,Float,"Allele Balance for hets (ref/(ref+alt))"' in out


def test_make_toy_data_and_eval(tmp_path: Path) -> None:
    toy_dir = tmp_path / "toy"
    cp = _run_cli(["make-toy-data", "--outdir", str(toy_dir)])
    assert cp.returncode == 0

    outdir = tmp_path / "out"
    cp = _run_cli(
        [
            "eval",
            "--eval",
            str(toy_dir / "eval.vcf.gz"),
            "--comp",
            str(toy_dir / "comp.vcf.gz"),
            "--bam",
            str(toy_dir / "sample.bam"),
            "--reference",
            str(toy_dir / "toy_ref.fa"),
            "--outdir",
            str(outdir),
            "--no-progress",
        ]
    )
    assert cp.returncode == 0, cp.stderr
    assert "nMultiSNPs\t1" in cp.stdout
    assert (outdir / "report.html").exists()
    assert (outdir / "annotations.tsv.gz").exists()

    summary = json.loads((outdir / "summary.json").read_text(encoding="utf-8"))
    fields = summary["evaluators"]["MultiallelicSummary"]["fields"]
    assert fields["nProcessedLoci"] == 200
    assert summary["annotated_sites"] == 5
    assert summary["locus_errors"][0]["locus"] == "chr1:121"


def test_eval_without_comparison_reports_nan_as_text(tmp_path: Path) -> None:
    toy = make_toy_data(outdir=tmp_path / "toy")
    outdir = tmp_path / "out"
    rc = main(["eval", "--eval", toy["eval_vcf"], "--outdir", str(outdir), "--no-progress"])
    assert rc == 0
    summary = json.loads((outdir / "summary.json").read_text(encoding="utf-8"))
    fields = summary["evaluators"]["MultiallelicSummary"]["fields"]
    assert fields["knownSNPsPartial"] == 0
    assert summary["header_lines"] == []
    assert not (outdir / "annotations.tsv.gz").exists()


def test_annotation_without_bam_fails(tmp_path: Path) -> None:
    toy = make_toy_data(outdir=tmp_path / "toy")
    cp = _run_cli(["eval", "--eval", toy["eval_vcf"], "--outdir", str(tmp_path / "out"), "--annotation", "AB"])
    assert cp.returncode == 2
    assert "--annotation requires --bam" in cp.stderr


def test_annotation_writer_streams_rows(tmp_path: Path) -> None:
    path = tmp_path / "ab.tsv.gz"
    header = ['##INFO=<ID=AB,Number=1,Type=Float,Description="Allele Balance for hets (ref/(ref+alt))">']
    with AnnotationTsvWriter(path, ["AB"], header_lines=header) as writer:
        writer(SiteAnnotation(locus=GenomicLocus("chr1", 41), values={"AB": "0.60"}))
        writer(SiteAnnotation(locus=GenomicLocus("chr1", 81), values={"AB": None}))
    assert writer.rows_written == 2

    with gzip.open(path, "rt") as fh:
        lines = fh.read().splitlines()
    assert lines == [header[0], "CHROM\tPOS\tAB", "chr1\t41\t0.60", "chr1\t81\t."]


def test_annotate_command(tmp_path: Path, capsys) -> None:
    toy = make_toy_data(outdir=tmp_path / "toy")
    outdir = tmp_path / "ann"
    args = build_parser().parse_args(["annotate", "--vcf", toy["eval_vcf"], "--bam", toy["bam"], "--outdir", str(outdir)])
    assert args.cmd == "annotate"
    assert args.annotation is None

    rc = main(
        [
            "annotate",
            "--vcf",
            toy["eval_vcf"],
            "--bam",
            toy["bam"],
            "--reference",
            toy["ref_fa"],
            "--outdir",
            str(outdir),
            "--no-progress",
        ]
    )
    assert rc == 0
    out = capsys.readouterr().out
    assert out.startswith("##INFO=<ID=AB,")
    assert "5 site(s) annotated" in out
    assert not (outdir / "summary.json").exists()

    with gzip.open(outdir / "annotations.tsv.gz", "rt") as fh:
        lines = fh.read().splitlines()
    assert lines[0].startswith("##INFO=<ID=AB,Number=1,Type=Float")
    assert lines[1] == "CHROM\tPOS\tAB"
    rows = {int(r.split("\t")[1]): r.split("\t")[2] for r in lines[2:]}
    assert rows[41] == "0.60"
    assert rows[81] == "."


def test_annotate_requires_bam(tmp_path: Path) -> None:
    toy = make_toy_data(outdir=tmp_path / "toy")
    cp = _run_cli(["annotate", "--vcf", toy["eval_vcf"], "--outdir", str(tmp_path / "ann")])
    assert cp.returncode == 2
    assert "--bam" in cp.stderr
