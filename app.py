from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import threading
from typing import Any, List, Optional

import uvicorn

from retainer.core.config.manager import ConfigManager
from retainer.core.config.paths import ConfigFsPaths
from retainer.core.engine import LifecycleEngine
from retainer.core.errors import RetainerError, ValidationError
from retainer.core.ledger.anomalies import AnomalyKind
from retainer.core.logger import setup_logging
from retainer.web.api import create_app


def _print(obj: Any) -> None:
    print(json.dumps(obj, indent=2, sort_keys=True, default=str))


def _dump(items: List[Any]) -> List[Any]:
    return [i.model_dump(mode="json") for i in items]


def _build_engine(args: argparse.Namespace) -> LifecycleEngine:
    cm = ConfigManager(fs=ConfigFsPaths(args.root), logger=None)
    cfg = cm.load_all()
    log_cfg = cfg.engine.logging
    log_dir = log_cfg.log_dir if os.path.isabs(log_cfg.log_dir) else os.path.join(args.root, log_cfg.log_dir)
    logger = setup_logging(log_dir, level=getattr(logging, log_cfg.level))
    return LifecycleEngine(cfg, root=args.root, logger=logger)


def _build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Retainer: data retention lifecycle engine")
    ap.add_argument("--root", default=".", help="Directory holding config/, data/ and logs/.")
    ap.add_argument("--actor", default=os.environ.get("RETAINER_ACTOR", "operator"), help="Operator name recorded in the audit log.")
    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("serve", help="Run the HTTP API with the scheduler in the background.")
    p.add_argument("--host", default=None)
    p.add_argument("--port", type=int, default=None)
    p.add_argument("--no-scheduler", action="store_true")

    p = sub.add_parser("run", help="Run the scheduler loop (daily/weekly/monthly jobs).")
    p.add_argument("--once", action="store_true", help="Run due jobs once and exit.")

    for name, help_text in (("sweep", "Ad-hoc daily deletion sweep."), ("aggregate", "Ad-hoc weekly aggregation run.")):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--category", default=None)
        p.add_argument("--as-of", default=None)

    p = sub.add_parser("audit-scan", help="Ad-hoc monthly audit/orphan scan.")
    p.add_argument("--as-of", default=None)

    hold = sub.add_parser("hold", help="Force-place or force-release a legal hold.").add_subparsers(dest="action", required=True)
    p = hold.add_parser("place")
    target = p.add_mutually_exclusive_group(required=True)
    target.add_argument("--subject", default=None)
    target.add_argument("--record", default=None)
    p.add_argument("--justification", required=True)
    p = hold.add_parser("release")
    p.add_argument("hold_id")
    p.add_argument("--justification", required=True)
    hold.add_parser("list")

    review = sub.add_parser("review", help="Records awaiting deletion review.").add_subparsers(dest="action", required=True)
    p = review.add_parser("list")
    p.add_argument("--category", default=None)
    for action in ("approve", "deny"):
        p = review.add_parser(action)
        p.add_argument("record_id")
        p.add_argument("--justification", required=True)

    anomalies = sub.add_parser("anomalies", help="Flagged conditions awaiting manual resolution.").add_subparsers(dest="action", required=True)
    p = anomalies.add_parser("list")
    p.add_argument("--kind", choices=[k.value for k in AnomalyKind], default=None)
    p = anomalies.add_parser("resolve")
    p.add_argument("anomaly_id")
    p.add_argument("--justification", required=True)
    p.add_argument("--delete", action="store_true", help="Erase the affected record as part of the resolution.")

    catalog = sub.add_parser("catalog", help="Policy catalog.").add_subparsers(dest="action", required=True)
    p = catalog.add_parser("show")
    p.add_argument("--as-of", default=None)
    p.add_argument("--all", action="store_true", help="Every version, oldest first.")
    p = catalog.add_parser("publish")
    p.add_argument("path", help='JSON file: {"categories": [...]}')
    p.add_argument("--effective-at", required=True)
    p.add_argument("--notes", default="")

    audit = sub.add_parser("audit", help="Audit log.").add_subparsers(dest="action", required=True)
    p = audit.add_parser("export")
    p.add_argument("--since", default=None)
    p.add_argument("--until", default=None)
    p.add_argument("--record", default=None)
    p.add_argument("--format", choices=["json", "csv"], default="json")
    p.add_argument("--out", default=None, help="Write to a file instead of stdout.")
    audit.add_parser("verify")

    p = sub.add_parser("certificate", help="Show the deletion certificate of a record.")
    p.add_argument("record_id")

    sub.add_parser("status", help="Counts per state, holds, anomalies.")
    return ap


def _serve(engine: LifecycleEngine, args: argparse.Namespace) -> int:
    web = engine.cfg.engine.web
    host = args.host or web.bind_host
    port = int(args.port or web.port)
    app = create_app(engine, api_key=web.api_key or None, logger=engine.logger)
    if not args.no_scheduler:
        engine.scheduler.start()
    try:
        uvicorn.run(app, host=host, port=port, log_level="info")
    finally:
        engine.scheduler.stop()
    return 0


def _run(engine: LifecycleEngine, args: argparse.Namespace) -> int:
    if args.once:
        _print([r.summary() for r in engine.scheduler.run_due()])
        return 0
    engine.scheduler.start()
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        pass
    finally:
        engine.scheduler.stop()
    return 0


def _dispatch(engine: LifecycleEngine, args: argparse.Namespace) -> int:
    cmd = args.command
    actor = args.actor
    if cmd == "serve":
        return _serve(engine, args)
    if cmd == "run":
        return _run(engine, args)
    if cmd == "sweep":
        report = engine.run_sweep(args.category, as_of=args.as_of)
        _print(report.summary())
        return 0 if report.status == "ok" else 1
    if cmd == "aggregate":
        report = engine.run_aggregation(args.category, as_of=args.as_of)
        _print(report.summary())
        return 0 if report.status == "ok" else 1
    if cmd == "audit-scan":
        report = engine.run_audit_scan(as_of=args.as_of)
        _print(report.summary())
        return 0
    if cmd == "hold":
        if args.action == "place":
            h = engine.force_place_hold(justification=args.justification, subject_id=args.subject, record_id=args.record, actor=actor)
            _print(h.model_dump(mode="json"))
        elif args.action == "release":
            _print(engine.force_release_hold(args.hold_id, justification=args.justification, actor=actor).model_dump(mode="json"))
        else:
            _print(_dump(engine.holds.active_holds()))
        return 0
    if cmd == "review":
        if args.action == "list":
            _print([r.model_dump(mode="json", exclude={"owner_id", "tags"}) for r in engine.pending_reviews(category=args.category)])
        elif args.action == "approve":
            _print(engine.approve_review(args.record_id, actor=actor, justification=args.justification).model_dump(mode="json"))
        else:
            rec = engine.deny_review(args.record_id, actor=actor, justification=args.justification)
            _print({"record_id": rec.record_id, "state": rec.state.value})
        return 0
    if cmd == "anomalies":
        if args.action == "list":
            _print(_dump(engine.list_anomalies(kind=AnomalyKind(args.kind) if args.kind else None)))
        else:
            _print(engine.resolve_anomaly(args.anomaly_id, actor=actor, justification=args.justification, delete=args.delete).model_dump(mode="json"))
        return 0
    if cmd == "catalog":
        if args.action == "show":
            if args.all:
                _print(_dump(engine.catalog.versions()))
            else:
                _print(engine.get_current_policy_catalog(args.as_of).model_dump(mode="json"))
        else:
            with open(args.path, "r", encoding="utf-8") as f:
                doc = json.load(f)
            if not isinstance(doc, dict) or not isinstance(doc.get("categories"), list):
                raise ValidationError('Catalog file must be an object with a "categories" list.')
            v = engine.publish_catalog(doc["categories"], effective_at=args.effective_at, published_by=actor, notes=args.notes)
            _print({"version": v.version, "effective_at": v.effective_at, "hash": v.hash})
        return 0
    if cmd == "audit":
        if args.action == "verify":
            rep = engine.verify_audit_log()
            _print(rep.model_dump(mode="json"))
            return 0 if rep.ok else 1
        if args.out:
            print(engine.export_audit_file(args.out, fmt=args.format, since=args.since, until=args.until, record_id=args.record))
        else:
            _print(_dump(engine.export_audit_log(args.since, args.until, record_id=args.record)))
        return 0
    if cmd == "certificate":
        _print(engine.get_deletion_certificate(args.record_id).model_dump(mode="json"))
        return 0
    if cmd == "status":
        _print(engine.status())
        return 0
    raise ValidationError(f"Unknown command '{cmd}'.")


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    try:
        engine = _build_engine(args)
        return _dispatch(engine, args)
    except RetainerError as e:
        print(json.dumps(e.to_dict(), sort_keys=True), file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
