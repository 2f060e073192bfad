from __future__ import annotations

import datetime as _dt
import logging
from pathlib import Path

from jinja2 import Template

from .models import BatchSummary

logger = logging.getLogger(__name__)


_REPORT_TEMPLATE = Template(
    """<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <title>doradobatch report</title>
  <style>
    body { font-family: Arial, Helvetica, sans-serif; margin: 24px; }
    code, pre { background: #f6f8fa; padding: 2px 4px; border-radius: 4px; }
    pre { padding: 12px; overflow-x: auto; white-space: pre-wrap; }
    h1, h2, h3 { margin-top: 1.2em; }
    table { border-collapse: collapse; margin-top: 0.6em; }
    th, td { border: 1px solid #ddd; padding: 8px; vertical-align: top; }
    th { background: #f2f2f2; text-align: left; }
    .ok { color: #1a7f37; }
    .failed, .cancelled { color: #cf222e; }
    .small { color: #666; font-size: 0.9em; }
  </style>
</head>
<body>

<h1>doradobatch report</h1>
<p class="small">Generated: {{ generated_at }}</p>

<h2>Run summary</h2>
<table>
  <tr><th>Version string</th><td><code>{{ summary.version_string }}</code></td></tr>
  <tr><th>Jobs</th><td>{{ summary.results | length }}</td></tr>
  <tr><th>Succeeded</th><td>{{ summary.n_ok }}</td></tr>
  <tr><th>Failed</th><td>{{ summary.n_failed }}</td></tr>
</table>

<h2>Jobs</h2>
<table>
  <tr><th>Unit</th><th>Status</th><th>Runtime (s)</th><th>BAM</th><th>Log</th></tr>
  {% for r in summary.results %}
  <tr>
    <td><code>{{ r.unit_name }}</code><br><span class="small">{{ r.reference }}</span></td>
    <td class="{{ r.status.value }}">{{ r.status.value }}{% if r.error_type %} ({{ r.error_type }}){% endif %}</td>
    <td>{{ "%.1f" | format(r.runtime_seconds) }}</td>
    <td>{% if r.outputs %}<code>{{ r.outputs.bam_path.name }}</code>{% endif %}</td>
    <td>{% if r.outputs %}<code>{{ r.outputs.log_path }}</code>{% endif %}</td>
  </tr>
  {% endfor %}
</table>

{% if failures %}
<h2>Failures</h2>
{% for r in failures %}
<h3><code>{{ r.unit_name }}</code></h3>
<pre>{{ r.message }}</pre>
{% endfor %}
{% endif %}

<hr>
<p class="small">doradobatch {{ version }}</p>
</body>
</html>""",
    autoescape=True,
)


def render_batch_report(*, outdir: str | Path, version: str, summary: BatchSummary) -> Path:
    outdir = Path(outdir)
    outdir.mkdir(parents=True, exist_ok=True)

    html = _REPORT_TEMPLATE.render(
        generated_at=_dt.datetime.now().isoformat(timespec="seconds"),
        version=version,
        summary=summary,
        failures=[r for r in summary.results if not r.ok],
    )

    out_path = outdir / "batch_report.html"
    out_path.write_text(html, encoding="utf-8")
    return out_path
