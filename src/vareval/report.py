from __future__ import annotations

import datetime as _dt
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, TextIO

from jinja2 import Template

from .dispatcher import EvaluationDispatcher, LocusError, SiteAnnotation
from .evaluators import EvaluationTable
from .utils import ensure_outdir, open_textmaybe_gzip, write_json

logger = logging.getLogger(__name__)

_MAX_ERRORS_SHOWN = 50


_REPORT_TEMPLATE = Template(
    """<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <title>vareval report</title>
  <style>
    body { font-family: Arial, Helvetica, sans-serif; margin: 24px; }
    code, pre { background: #f6f8fa; padding: 2px 4px; border-radius: 4px; }
    pre { padding: 12px; overflow-x: auto; }
    table { border-collapse: collapse; margin-top: 0.6em; }
    th, td { border: 1px solid #ddd; padding: 8px; }
    th { background: #f2f2f2; text-align: left; }
    td.num { text-align: right; font-family: monospace; }
    .small { color: #666; font-size: 0.9em; }
  </style>
</head>
<body>

<h1>vareval report</h1>
<p class="small">Generated: {{ generated_at }}</p>

<h2>Inputs</h2>
<table>
  <tr><th>Eval VCF</th><td><code>{{ inputs.eval_vcf }}</code></td></tr>
  <tr><th>Comparison VCF</th><td><code>{{ inputs.comp_vcf or "-" }}</code></td></tr>
  <tr><th>BAM</th><td><code>{{ inputs.bam or "-" }}</code></td></tr>
  <tr><th>Reference</th><td><code>{{ inputs.reference or "-" }}</code></td></tr>
  <tr><th>Loci visited</th><td>{{ loci_processed }}</td></tr>
</table>

{% for table in tables %}
<h2>{{ table.evaluator }}</h2>
<p class="small">{{ table.description }}</p>
<table>
  <tr><th>Field</th><th>Value</th><th>Description</th></tr>
  {% for f in table.fields %}
  <tr><td><code>{{ f.name }}</code></td><td class="num">{{ f.formatted }}</td><td>{{ f.description }}</td></tr>
  {% endfor %}
</table>
{% endfor %}

{% if header_lines %}
<h2>Annotations</h2>
<pre>{% for line in header_lines %}{{ line }}
{% endfor %}</pre>
<p>{{ n_annotated }} site(s) annotated; values in <code>{{ annotations_path }}</code>.</p>
{% endif %}

<h2>Locus errors</h2>
{% if errors %}
<p>{{ n_errors }} evaluator failure(s) were isolated to their locus{% if n_errors > errors|length %}; first {{ errors|length }} shown{% endif %}.</p>
<ul>
  {% for e in errors %}
  <li><code>{{ e.locus }}</code> {{ e.evaluator }}: {{ e.message }}</li>
  {% endfor %}
</ul>
{% else %}
<p>None.</p>
{% endif %}

<hr>
<p class="small">vareval {{ version }}</p>
</body>
</html>"""
)


def summary_dict(
    dispatcher: EvaluationDispatcher,
    *,
    inputs: Dict[str, Optional[str]],
) -> Dict[str, Any]:
    tables = dispatcher.results()
    return {
        "inputs": inputs,
        "loci_processed": dispatcher.loci_processed,
        "evaluators": {
            t.evaluator: {
                "description": t.description,
                "fields": {f.name: f.value for f in t.fields},
            }
            for t in tables
        },
        "header_lines": dispatcher.header_lines(),
        "annotated_sites": dispatcher.annotated_sites,
        "locus_errors": [
            {"locus": str(e.locus), "evaluator": e.evaluator, "message": e.message}
            for e in dispatcher.errors
        ],
    }


class AnnotationTsvWriter:
    """Streams annotated sites to a (gzipped) TSV, one row per site.

    The metadata header lines and the column header are written on open. The
    instance is callable, so it can be passed as a dispatcher ``annotation_sink``.
    ``.`` marks values that do not apply.
    """

    def __init__(self, path: str | Path, keys: Sequence[str], *, header_lines: Sequence[str] = ()) -> None:
        self.path = Path(path)
        self.keys = list(keys)
        self.header_lines = list(header_lines)
        self.rows_written = 0
        self._fh: Optional[TextIO] = None

    def open(self) -> "AnnotationTsvWriter":
        self._fh = open_textmaybe_gzip(self.path, "wt")
        for line in self.header_lines:
            self._fh.write(line + "\n")
        self._fh.write("\t".join(["CHROM", "POS", *self.keys]) + "\n")
        return self

    def __call__(self, site: SiteAnnotation) -> None:
        if self._fh is None:
            raise RuntimeError(f"Annotation writer for {self.path} is not open")
        values = [site.values.get(k) or "." for k in self.keys]
        self._fh.write("\t".join([site.locus.contig, str(site.locus.pos), *values]) + "\n")
        self.rows_written += 1

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None
            logger.info("Wrote %d annotated site(s) to %s", self.rows_written, self.path)

    def __enter__(self) -> "AnnotationTsvWriter":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def write_annotations_tsv(
    path: str | Path,
    annotations: Sequence[SiteAnnotation],
    keys: Sequence[str],
    *,
    header_lines: Sequence[str] = (),
) -> Path:
    """Write sites that were collected in memory in one go."""
    with AnnotationTsvWriter(path, keys, header_lines=header_lines) as writer:
        for site in annotations:
            writer(site)
    return writer.path


def render_report(
    *,
    outdir: str | Path,
    version: str,
    inputs: Dict[str, Optional[str]],
    tables: List[EvaluationTable],
    errors: Sequence[LocusError],
    loci_processed: int,
    header_lines: Sequence[str] = (),
    n_annotated: int = 0,
    annotations_path: Optional[str] = None,
) -> Path:
    outdir = ensure_outdir(outdir)
    html = _REPORT_TEMPLATE.render(
        generated_at=_dt.datetime.now().isoformat(timespec="seconds"),
        version=version,
        inputs=inputs,
        tables=tables,
        errors=list(errors)[:_MAX_ERRORS_SHOWN],
        n_errors=len(errors),
        loci_processed=loci_processed,
        header_lines=list(header_lines),
        n_annotated=n_annotated,
        annotations_path=annotations_path,
    )
    out_path = outdir / "report.html"
    out_path.write_text(html, encoding="utf-8")
    return out_path


def write_outputs(
    dispatcher: EvaluationDispatcher,
    *,
    outdir: str | Path,
    version: str,
    inputs: Dict[str, Optional[str]],
    annotations_tsv: Optional[str | Path] = None,
) -> Dict[str, str]:
    """Write summary.json, annotations.tsv.gz (when annotators ran) and report.html.

    Pass ``annotations_tsv`` when the sites were already streamed there through an
    ``AnnotationTsvWriter``; otherwise sites held by the dispatcher are written now.
    """
    outdir_path = ensure_outdir(outdir)
    outputs: Dict[str, str] = {}

    summary = summary_dict(dispatcher, inputs=inputs)
    write_json(outdir_path / "summary.json", summary)
    outputs["summary"] = str(outdir_path / "summary.json")

    annotations_path: Optional[str] = None
    if annotations_tsv is not None:
        tsv = Path(annotations_tsv)
        annotations_path = tsv.name
        outputs["annotations"] = str(tsv)
    elif dispatcher.annotators:
        keys = [a.key for a in dispatcher.annotators]
        tsv = write_annotations_tsv(
            outdir_path / "annotations.tsv.gz",
            dispatcher.annotations,
            keys,
            header_lines=dispatcher.header_lines(),
        )
        annotations_path = tsv.name
        outputs["annotations"] = str(tsv)

    report = render_report(
        outdir=outdir_path,
        version=version,
        inputs=inputs,
        tables=dispatcher.results(),
        errors=dispatcher.errors,
        loci_processed=dispatcher.loci_processed,
        header_lines=dispatcher.header_lines(),
        n_annotated=dispatcher.annotated_sites,
        annotations_path=annotations_path,
    )
    outputs["report"] = str(report)
    logger.info("Report written: %s", report)
    return outputs
