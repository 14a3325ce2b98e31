from __future__ import annotations

import datetime as _dt
import logging
from pathlib import Path
from typing import Any, Dict

from jinja2 import Template

logger = logging.getLogger(__name__)


_REPORT_TEMPLATE = Template(
    """<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <title>tbnanopipe report: {{ s.sample_id }}</title>
  <style>
    body { font-family: "Helvetica Neue", Helvetica, Arial, sans-serif; max-width: 1100px; margin: 20px auto; color: #222; }
    code { font-size: 0.9em; background: #f3f3f3; padding: 1px 3px; }
    h1 { border-bottom: 2px solid #8a1c1c; padding-bottom: 4px; }
    table { border-collapse: collapse; margin: 0.5em 0 1em 0; }
    th, td { border-bottom: 1px solid #ccc; padding: 4px 10px; text-align: left; }
    th { background: #fafafa; }
    td.num { text-align: right; }
    .panels { display: flex; flex-wrap: wrap; gap: 20px; }
    .panel { flex: 1 1 420px; }
    .meta { color: #777; font-size: 0.85em; }
    img { max-width: 100%; }
  </style>
</head>
<body>

<h1>Sample {{ s.sample_id }}</h1>
<p class="meta">Generated: {{ generated_at }}</p>

<div class="panels">
  <div class="panel">
    <h3>Inputs</h3>
    <table>
      <tr><th>Alignment</th><td><code>{{ s.bam }}</code></td></tr>
      <tr><th>Reference</th><td><code>{{ s.reference }}</code></td></tr>
      <tr><th>Aligned reads</th><td>{{ s.phase.read_count }}</td></tr>
      <tr><th>Phasing</th><td><code>{{ s.phase.state }}</code></td></tr>
    </table>
  </div>
  <div class="panel">
    <h3>Consensus</h3>
    <table>
      <tr><th>Length</th><td>{{ s.consensus.length }}</td></tr>
      <tr><th>Substitutions</th><td>{{ s.consensus.substitutions }}</td></tr>
      <tr><th>Masked (N)</th><td>{{ s.consensus.ambiguous }}</td></tr>
      <tr><th>FASTA</th><td><code>{{ s.consensus.fasta }}</code></td></tr>
    </table>
  </div>
</div>

<h2>Database annotation</h2>
<table>
  <tr><th>Database</th><th>Records</th><th>Matched</th><th>Canonical</th></tr>
  {% for name, c in s.databases.items() %}
  <tr><td>{{ name }}</td><td class="num">{{ c.annotated }}</td><td class="num">{{ c.matched }}</td><td class="num">{{ c.canonical }}</td></tr>
  {% endfor %}
  <tr><th>Combined final set</th><td colspan="3">{{ s.final_records }}</td></tr>
</table>

<h2>Plots</h2>
<div class="panels">
  {% if plots.database_counts %}
  <div class="panel">
    <h3>Per-database counts</h3>
    <img src="{{ plots.database_counts }}" alt="database counts">
  </div>
  {% endif %}
  {% if plots.consensus %}
  <div class="panel">
    <h3>Consensus</h3>
    <img src="{{ plots.consensus }}" alt="consensus composition">
  </div>
  {% endif %}
</div>

<h2>Stages</h2>
<table>
  <tr><th>Stage</th><th>Status</th><th>Runtime (s)</th><th>Outputs</th></tr>
  {% for st in s.stages %}
  <tr>
    <td>{{ st.stage }}</td>
    <td>{{ "resumed" if st.skipped else "run" }}</td>
    <td>{{ "%.1f"|format(st.runtime_seconds) }}</td>
    <td>{% for o in st.outputs %}<code>{{ o }}</code><br>{% endfor %}</td>
  </tr>
  {% endfor %}
</table>


<p class="meta">tbnanopipe {{ version }}</p>
</body>
</html>"""
)


def render_sample_report(
    *,
    outdir: str | Path,
    version: str,
    summary: Dict[str, Any],
    plots: Dict[str, str],
) -> Path:
    """Write ``report.html`` for one sample from its ``summary.json`` content."""
    outdir = Path(outdir)
    outdir.mkdir(parents=True, exist_ok=True)

    html = _REPORT_TEMPLATE.render(
        generated_at=_dt.datetime.now().isoformat(timespec="seconds"),
        version=version,
        s=summary,
        plots=plots,
    )

    out_path = outdir / "report.html"
    out_path.write_text(html, encoding="utf-8")
    return out_path
