from __future__ import annotations
import argparse
import json
import logging
import os
import sys
from typing import Any, Dict, List, Optional, Sequence

import yaml

from .agreement import render_markdown, summarize
from .api_client import VisionClient
from .calibration import find_latest_model, load_calibration_model
from .engines import DiagnosisEngine, SubprocessDiagnosisEngine, VisionLLMDiagnosisEngine
from .io_utils import collect_images, read_image, read_ndjson, write_json, write_text
from .perturb import make_synthetic_image
from .reporting import build_calibration_report, plot_reliability_diagram, render_calibration_markdown
from .settings import EngineSettings
from .stability import run_stability

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "config", "default.yaml")


def load_config(path: Optional[str]) -> Dict[str, Any]:
    path = path or (DEFAULT_CONFIG if os.path.exists(DEFAULT_CONFIG) else None)
    if not path:
        return {}
    with open(path, "r", encoding="utf-8") as f:
        cfg = yaml.safe_load(f)
    return cfg if isinstance(cfg, dict) else {}


def build_engine(engine_cfg: Dict[str, Any], settings: EngineSettings) -> DiagnosisEngine:
    kind = str(engine_cfg.get("kind") or settings.engine_kind).lower()
    timeout = float(engine_cfg.get("timeout") or settings.engine_timeout)
    if kind == "subprocess":
        command = engine_cfg.get("command") or settings.engine_command
        if not command:
            raise ValueError("subprocess engine needs engine.command or DIAG_ENGINE_COMMAND")
        return SubprocessDiagnosisEngine(command, cwd=engine_cfg.get("cwd"), timeout=timeout)
    if kind == "vlm":
        client = VisionClient(
            base_url=engine_cfg.get("base_url") or settings.openai_base_url,
            api_key=engine_cfg.get("api_key") or settings.openai_api_key,
            model=engine_cfg.get("model") or settings.openai_model,
            timeout=timeout,
            provider=str(engine_cfg.get("provider") or settings.llm_provider).lower(),
        )
        return VisionLLMDiagnosisEngine(client, temperature=float(engine_cfg.get("temperature", 0.0)))
    raise ValueError(f"unknown engine kind: {kind}")


def _missing(paths: Sequence[str]) -> List[str]:
    return [p for p in paths if p and not os.path.exists(p)]


def cmd_calibration(args, cfg: Dict[str, Any]) -> int:
    missing = _missing([args.model_outputs, args.gold_labels])
    if missing:
        print(f"input not found: {', '.join(missing)}", file=sys.stderr)
        return 2
    ccfg = cfg.get("calibration", {}) or {}
    model_path = args.model or ccfg.get("model_path") or find_latest_model(ccfg.get("registry_dir", ""))
    model, source, error = load_calibration_model(model_path)

    report = build_calibration_report(
        model,
        read_ndjson(args.model_outputs),
        read_ndjson(args.gold_labels),
        iou_threshold=args.iou_threshold if args.iou_threshold is not None else ccfg.get("iou_threshold", 0.3),
        bins=args.bins if args.bins is not None else ccfg.get("bins", 10),
        group_by=ccfg.get("group_by"),
        model_source=source,
        model_error=error,
    )
    out = write_json(args.out, report)
    print(out)
    if args.out_md:
        print(write_text(args.out_md, render_calibration_markdown(report)))
    if args.plot:
        print(plot_reliability_diagram(report, args.plot))
    print(json.dumps(report["metrics"], ensure_ascii=False))
    return 0


def _try_read(path: str):
    try:
        return read_image(path)
    except FileNotFoundError:
        logger.warning("could not read image %s", path)
        return None


def cmd_stability(args, cfg: Dict[str, Any]) -> int:
    missing = _missing(args.images)
    if missing:
        print(f"input not found: {', '.join(missing)}", file=sys.stderr)
        return 2
    scfg = cfg.get("stability", {}) or {}
    try:
        engine = build_engine(cfg.get("engine", {}) or {}, EngineSettings())
    except ValueError as e:
        print(f"engine not configured: {e}", file=sys.stderr)
        return 2

    paths = collect_images(args.images)
    if paths:
        images = [(os.path.basename(p), _try_read(p)) for p in paths]
    else:
        logger.info("no input images, using the synthetic skin patch")
        images = [("synthetic_skin.png", make_synthetic_image())]

    n = args.n_perturbations if args.n_perturbations is not None else scfg.get("n_perturbations", 10)
    report = run_stability(
        engine,
        images,
        n_perturbations=int(n),
        base_seed=int(scfg.get("base_seed", 1000)),
        max_workers=int(scfg.get("max_workers", 4)),
        call_timeout=scfg.get("call_timeout", 60.0),
        top_k=int(scfg.get("top_k", 10)),
    )
    print(write_json(args.out, report))
    summary = report["summary"]
    print(json.dumps(summary, ensure_ascii=False))

    budget = args.max_severity_range if args.max_severity_range is not None else scfg.get("max_severity_range")
    worst = summary.get("worst_severity_score_range")
    if budget is not None and worst is not None and worst > float(budget):
        print(f"worst severity_score_range {worst} exceeds budget {float(budget)}", file=sys.stderr)
        return 1
    return 0


def cmd_agreement(args, cfg: Dict[str, Any]) -> int:
    if _missing([args.samples]):
        print(f"input not found: {args.samples}", file=sys.stderr)
        return 2
    samples = read_ndjson(args.samples)
    summary = summarize(samples)
    print(write_text(args.out_md, render_markdown(summary)))
    print(write_json(args.out_json, {"files": {"agreement_samples": args.samples},
                                     "counts": {"agreement_samples": len(samples)},
                                     "summary": summary}))
    return 0


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="skin-diag-eval", description="Calibration and stability evaluation for a skin diagnosis engine.")
    ap.add_argument("--config", default=None, help="Path to YAML config (default: config/default.yaml)")
    ap.add_argument("--log-level", default=None, help="Overrides logging.level from the config")
    sub = ap.add_subparsers(dest="command", required=True)

    c = sub.add_parser("calibration", help="Calibrated vs raw ECE/Brier against gold labels")
    c.add_argument("--model-outputs", required=True, help="NDJSON of model output records")
    c.add_argument("--gold-labels", required=True, help="NDJSON of gold label records")
    c.add_argument("--model", default=None, help="Calibration model JSON (default: config / latest in registry)")
    c.add_argument("--iou-threshold", type=float, default=None)
    c.add_argument("--bins", type=int, default=None)
    c.add_argument("--out", default="calibration_report.json")
    c.add_argument("--out-md", default="")
    c.add_argument("--plot", default="", help="Write a reliability diagram PNG here")
    c.set_defaults(func=cmd_calibration)

    s = sub.add_parser("stability", help="Severity drift under deterministic perturbations")
    s.add_argument("images", nargs="*", help="Image files/dirs; empty uses a synthetic patch")
    s.add_argument("--n-perturbations", type=int, default=None, help="8..12, excluding the original")
    s.add_argument("--max-severity-range", type=float, default=None,
                   help="Exit 1 if the worst severity_score_range exceeds this")
    s.add_argument("--out", default="stability_report.json")
    s.set_defaults(func=cmd_stability)

    a = sub.add_parser("agreement", help="Grouped agreement summary")
    a.add_argument("--samples", required=True, help="NDJSON of agreement samples")
    a.add_argument("--out-md", default="agreement_report.md")
    a.add_argument("--out-json", default="agreement_report.json")
    a.set_defaults(func=cmd_agreement)
    return ap


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    cfg = load_config(args.config)
    level = args.log_level or (cfg.get("logging", {}) or {}).get("level", "INFO")
    logging.basicConfig(level=getattr(logging, str(level).upper(), logging.INFO),
                        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    return args.func(args, cfg)


if __name__ == "__main__":
    raise SystemExit(main())
