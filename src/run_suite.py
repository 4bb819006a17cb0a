#!/usr/bin/env python3

import argparse
import asyncio
import csv
import html
import json
import sys
import zipfile
from datetime import datetime
from pathlib import Path

from errors import ConfigurationError
from runner import run_test_suite, select_scenarios
from scenarios import SCENARIOS
from settings import HarnessSettings


EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


def write_html_report(results_json: dict, html_path: Path):
    passed = sum(1 for r in results_json.get("tests", []) if r.get("status") == "passed")
    failed = sum(1 for r in results_json.get("tests", []) if r.get("status") == "failed")
    total = len(results_json.get("tests", []))

    report = f"""
<html><head><meta charset="utf-8"><title>WK CRM E2E Report</title>
<style>
body {{ font-family: Arial, sans-serif; padding: 20px; }}
.summary {{ margin-bottom: 16px; }}
.pass {{ color: #0a7b44; }}
.fail {{ color: #b00020; }}
pre {{ background: #f6f8fa; padding: 12px; border-radius: 6px; overflow: auto; }}
</style>
</head><body>
  <h1>WK CRM E2E Report</h1>
  <div class="summary">
    <strong>Total:</strong> {total} &nbsp; <strong class="pass">Passed:</strong> {passed} &nbsp; <strong class="fail">Failed:</strong> {failed}
  </div>
  <hr />
  {''.join(render_test_result(tr) for tr in results_json.get('tests', []))}
</body></html>
"""
    with open(html_path, "w", encoding="utf-8") as f:
        f.write(report)


def render_test_result(test_result: dict) -> str:
    status_class = "pass" if test_result.get("status") == "passed" else "fail"
    name = html.escape(test_result.get("name", "Unnamed Test"))
    error = html.escape(test_result.get("error", ""))
    screenshot = test_result.get("screenshot", "")
    details = {
        "attempts": test_result.get("attempts", 1),
        "transitions": test_result.get("transitions", []),
        "observations": test_result.get("observations", []),
        "cleanup": test_result.get("cleanup", []),
    }
    details_rendered = html.escape(json.dumps(details, indent=2, ensure_ascii=False))
    img_tag = f"<div><img src=\"{html.escape(screenshot)}\" style=\"max-width: 100%; border: 1px solid #ddd;\" /></div>" if screenshot else ""
    error_block = f"<pre>{error}</pre>" if error else ""
    diag_block = ""
    if test_result.get("diagnostics"):
        diag = html.escape(json.dumps(test_result["diagnostics"], indent=2, ensure_ascii=False, default=str))
        diag_block = f"<details><summary>Diagnostics</summary><pre>{diag}</pre></details>"
    return f"""
  <section>
    <h3 class="{status_class}">{name} — {test_result.get('status','unknown').upper()}</h3>
    <details>
      <summary>Details</summary>
      <pre>{details_rendered}</pre>
    </details>
    {diag_block}
    {img_tag}
    {error_block}
  </section>
  <hr />
"""


def archive_files(zip_path: Path, files: list[Path]):
    with zipfile.ZipFile(zip_path, "w") as zf:
        for f in files:
            if f.exists():
                zf.write(f, arcname=f.name)


def log_to_csv(log_path: Path, timestamp: str, artifacts: dict, summary: dict):
    csv_exists = log_path.exists()
    with open(log_path, "a", newline="") as csvfile:
        writer = csv.writer(csvfile)
        if not csv_exists:
            writer.writerow(["Timestamp", "Total", "Passed", "Failed", "Results", "Report", "Archive"])
        writer.writerow([
            timestamp,
            summary.get("total", 0),
            summary.get("passed", 0),
            summary.get("failed", 0),
            str(artifacts.get("results")),
            str(artifacts.get("report")),
            str(artifacts.get("archive")),
        ])


def summarize(results_json: dict) -> dict:
    tests = results_json.get("tests", [])
    passed = sum(1 for r in tests if r.get("status") == "passed")
    return {"total": len(tests), "passed": passed, "failed": len(tests) - passed}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="WK CRM end-to-end scenarios (sequential, PROD-safe)")
    parser.add_argument("--base-url", help="Base URL under test (default: $BASE_URL or https://crm.wkconnect.de)")
    parser.add_argument("--scenario", action="append", default=[], help="Run scenarios whose name contains this text, or a group (auth, rbac, lead, smoke). Repeatable.")
    parser.add_argument("--list", action="store_true", help="List scenarios in execution order and exit")
    parser.add_argument("--retries", type=int, help="Retries per failed scenario (default: 1 on CI, else 0)")
    parser.add_argument("--output-dir", default="data/runs", help="Parent directory for run artifacts")
    parser.add_argument("--headful", action="store_true", help="Run browser headful for debugging")
    parser.add_argument("--verbose", action="store_true", help="Print step-level progress")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = HarnessSettings.from_env(
            base_url=args.base_url.rstrip("/") if args.base_url else None,
            retries=args.retries,
        )
        if args.list:
            for sc in select_scenarios(SCENARIOS, settings, args.scenario):
                roles = ",".join(r.name for r in sc.roles)
                print(f"{sc.group:6} {sc.name}  [{roles}]")
            return EXIT_OK
    except ConfigurationError as e:
        print(f"✖ Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    run_dir = Path(args.output_dir) / f"run_{timestamp}"
    run_dir.mkdir(parents=True, exist_ok=True)

    print(f"🏃 Running scenarios against {settings.base_url} (retries={settings.retries}, ci={settings.ci})")
    try:
        results_json = asyncio.run(run_test_suite(
            settings=settings,
            scenarios=SCENARIOS,
            run_dir=run_dir,
            headless=(not args.headful),
            verbose=args.verbose,
            names=args.scenario,
        ))
    except ConfigurationError as e:
        print(f"✖ Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG

    results_path = run_dir / "results.json"
    with open(results_path, "w", encoding="utf-8") as f:
        json.dump(results_json, f, indent=2, ensure_ascii=False, default=str)
    print(f"📊 Results written: {results_path}")
    artifacts = {"results": results_path}

    report_path = run_dir / "report.html"
    write_html_report(results_json, report_path)
    artifacts["report"] = report_path
    print(f"📝 HTML report: {report_path}")

    archive_path = run_dir / "archive.zip"
    attached = [results_path, report_path]
    for r in results_json.get("tests", []):
        for key in ("screenshot", "trace", "console_log"):
            if r.get(key):
                attached.append(Path(r[key]))
    archive_files(archive_path, attached)
    artifacts["archive"] = archive_path
    print(f"📦 Archive: {archive_path}")

    summary = summarize(results_json)
    log_to_csv(Path(args.output_dir) / "run_log.csv", timestamp, artifacts, summary)

    if summary["total"]:
        print(f"✅ Done. Total: {summary['total']}, Passed: {summary['passed']}, Failed: {summary['failed']}")
    else:
        print("✅ Done. No scenarios executed.")
    return EXIT_FAILED if summary["failed"] else EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
