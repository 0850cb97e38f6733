"""
CLI
===
Operator commands for discovery, staging review, research and outreach.

Usage:
    ejendom-agent discover-street "Vesterbrogade" "København"
    ejendom-agent discover-scaffolding --min-score 6
    ejendom-agent staging --stage researched
    ejendom-agent staging counts
    ejendom-agent approve stg-1a2b3c4d
    ejendom-agent push stg-1a2b3c4d
    ejendom-agent research prop-1a2b3c4d
    ejendom-agent mark-ready prop-1a2b3c4d prop-5e6f7a8b
    ejendom-agent drain
    ejendom-agent followups prepare --days 10
    ejendom-agent stats
"""

import argparse
import json
import logging
import sys

from .config import Config
from .errors import EjendomError, NotFoundError, ValidationError
from .identity import format_location
from .outreach import OutreachStatus, followup_candidates, prepare_followups
from .outreach.status import STATUS_META

# Colors
CYAN = "\033[36m"
GREEN = "\033[32m"
YELLOW = "\033[33m"
DIM = "\033[2m"
BOLD = "\033[1m"
RESET = "\033[0m"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ejendom-agent",
        description="Find, research and contact property owners for outdoor advertising.",
    )
    parser.add_argument("--config", "-c", help="Path to config file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show debug logs")
    parser.add_argument("--json", action="store_true", help="Print raw JSON")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("discover-street", help="Scan a street and stage good candidates")
    p.add_argument("street")
    p.add_argument("city")
    p.add_argument("--min-score", type=float, default=None)
    p.add_argument("--min-traffic", type=int, default=None)

    p = sub.add_parser("discover-scaffolding", help="Stage active scaffolding permits")
    p.add_argument("--city", default="København")
    p.add_argument("--min-score", type=float, default=5)
    p.add_argument("--min-traffic", type=int, default=0)

    p = sub.add_parser("staging", help="List staged properties, or 'counts'")
    p.add_argument("action", nargs="?", choices=["list", "counts"], default="list")
    p.add_argument("--stage")
    p.add_argument("--source")
    p.add_argument("--city")
    p.add_argument("--search")

    p = sub.add_parser("reject", help="Reject staged properties")
    p.add_argument("ids", nargs="+")

    p = sub.add_parser("approve", help="Approve a researched staged property")
    p.add_argument("id")

    p = sub.add_parser("push", help="Push an approved staged property to the CRM")
    p.add_argument("id")

    p = sub.add_parser("research", help="Run the research workflow for properties")
    p.add_argument("ids", nargs="+")
    p.add_argument("--staged", action="store_true", help="Ids are staged property ids")

    p = sub.add_parser("mark-ready", help="Mark properties ready for sending")
    p.add_argument("ids", nargs="+")

    p = sub.add_parser("drain", help="Send queued mail within the hourly limit")
    p.add_argument("--limit", type=int, default=None, help="Override rate limit per hour")

    p = sub.add_parser("followups", help="List follow-up candidates, or 'prepare' drafts for them")
    p.add_argument("action", nargs="?", choices=["list", "prepare"], default="list")
    p.add_argument("--days", type=int, default=7, help="Days since the first mail")
    p.add_argument("--limit", type=int, default=20, help="Max drafts to prepare")

    sub.add_parser("stats", help="Queue, staging and property counts")

    p = sub.add_parser("runs", help="Recent workflow runs")
    p.add_argument("--limit", type=int, default=10)

    sub.add_parser("sweep", help="Fail stale workflow runs")
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    level = logging.DEBUG if args.verbose else logging.WARNING
    logging.basicConfig(level=level, format="%(name)s: %(message)s")

    config = Config.load(args.config)
    ctx = config.create_context()

    try:
        code = COMMANDS[args.command](ctx, args)
    except (ValidationError, NotFoundError) as e:
        print(f"{YELLOW}{e}{RESET}")
        code = 1
    except EjendomError as e:
        print(f"{YELLOW}Error: {e}{RESET}")
        code = 2
    sys.exit(code or 0)


def _print_json(data):
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def _print_discovery(result, args) -> int:
    if args.json:
        _print_json(result.to_dict())
        return 0
    label = result.street or result.city
    print(f"{BOLD}{label}{RESET}  {DIM}{result.source}{RESET}")
    print(f"  Addresses: {result.total_addresses} | after filter: {result.after_pre_filter} "
          f"| scored: {result.after_scoring} | qualified: {result.after_traffic_filter}")
    print(f"  {GREEN}Created: {result.created}{RESET} | already known: {result.already_exists} "
          f"| skipped: {result.skipped}")
    for staged_id in result.created_ids:
        print(f"    {DIM}{staged_id}{RESET}")
    if result.error:
        print(f"  {YELLOW}{result.error}{RESET}")
        return 1
    return 0


def cmd_discover_street(ctx, args) -> int:
    result = ctx.pipeline.discover_street(
        args.street, args.city,
        min_score=args.min_score if args.min_score is not None else ctx.config.min_score,
        min_traffic=args.min_traffic if args.min_traffic is not None else ctx.config.min_traffic,
    )
    return _print_discovery(result, args)


def cmd_discover_scaffolding(ctx, args) -> int:
    result = ctx.pipeline.discover_scaffolding(
        args.city, min_score=args.min_score, min_traffic=args.min_traffic,
    )
    return _print_discovery(result, args)


def cmd_staging(ctx, args) -> int:
    if args.action == "counts":
        counts = ctx.staging.counts()
        if args.json:
            _print_json(counts)
        else:
            for stage, count in counts.items():
                print(f"  {stage:<12} {count}")
        return 0

    records = ctx.staging.list(stage=args.stage, source=args.source, city=args.city, search=args.search)
    if args.json:
        _print_json([r.to_dict() for r in records])
        return 0
    if not records:
        print(f"{DIM}No staged properties.{RESET}")
    for r in records:
        score = f"{r.outdoor_score:g}" if r.outdoor_score is not None else "-"
        print(f"  {CYAN}{r.id}{RESET} [{r.stage.value}] {r.address}, "
              f"{format_location(r.postal_code, r.city)}  score {score}")
    return 0


def cmd_reject(ctx, args) -> int:
    result = ctx.staging.bulk_reject(args.ids)
    print(f"Rejected {result['rejected']}, failed {result['failed']}")
    for staged_id, error in result["errors"].items():
        print(f"  {YELLOW}{staged_id}: {error}{RESET}")
    return 1 if result["failed"] else 0


def cmd_approve(ctx, args) -> int:
    record = ctx.staging.approve(args.id)
    print(f"{GREEN}{record.id} approved{RESET}")
    return 0


def cmd_push(ctx, args) -> int:
    record = ctx.staging.push(args.id, ctx.property_store)
    print(f"{GREEN}{record.id} pushed as {record.pushed_property_id}{RESET}")
    return 0


def cmd_research(ctx, args) -> int:
    if not ctx.has_llm:
        print(f"{YELLOW}No LLM provider configured. Set OPENAI_API_KEY or ANTHROPIC_API_KEY.{RESET}")
        return 1
    failed = 0
    for item_id in args.ids:
        if args.staged:
            run = ctx.engine.research_staged(item_id, ctx.staging)
        else:
            run = ctx.engine.run(item_id)
        failed += run.status.value == "failed"
        if args.json:
            _print_json(run.to_dict())
            continue
        color = GREEN if run.status.value == "completed" else YELLOW
        print(f"{color}{run.id} {run.property_name}: {run.status.value}{RESET}")
        for step in run.steps:
            extra = step.error or step.details or ""
            print(f"  {step.step_name:<34} {step.status.value:<10} {DIM}{extra}{RESET}")
        if run.quality_gate_reason:
            print(f"  Quality gate: {run.quality_gate_reason}")
    return 1 if failed else 0


def cmd_mark_ready(ctx, args) -> int:
    failed = 0
    for property_id in args.ids:
        try:
            ctx.property_store.mark_ready(property_id)
            print(f"{GREEN}{property_id} ready for sending{RESET}")
        except (ValidationError, NotFoundError) as e:
            failed += 1
            print(f"{YELLOW}{property_id}: {e}{RESET}")
    return 1 if failed else 0


def cmd_drain(ctx, args) -> int:
    result = ctx.queue.drain(args.limit)
    if args.json:
        _print_json(result)
    else:
        print(f"Sent {result['sent']}, retried {result['retried']}, failed {result['failed']}, "
              f"deferred {result['deferred']}")
    return 0


def cmd_followups(ctx, args) -> int:
    if args.action == "prepare":
        if ctx.analyst is None:
            print(f"{YELLOW}No LLM provider configured. Set OPENAI_API_KEY or ANTHROPIC_API_KEY.{RESET}")
            return 1
        result = prepare_followups(ctx.property_store, ctx.analyst, days=args.days, limit=args.limit)
        if args.json:
            _print_json(result)
        else:
            print(f"Prepared {result['prepared']}/{result['total']} follow-up drafts")
            for r in result["results"]:
                if not r["success"]:
                    print(f"  {YELLOW}{r['property_id']}: {r['error']}{RESET}")
        return 1 if result["failed"] else 0

    candidates = followup_candidates(ctx.property_store, days=args.days)
    if args.json:
        _print_json(candidates)
        return 0
    if not candidates:
        print(f"{DIM}No follow-ups due.{RESET}")
    for c in candidates:
        ready = f"{GREEN}draft ready{RESET}" if c["draft_ready"] else f"{DIM}no draft{RESET}"
        print(f"  {CYAN}{c['property_id']}{RESET} {c['address']} <{c['contact_email']}> "
              f"{c['days_ago']} days ago, {ready}")
    return 0


def cmd_stats(ctx, args) -> int:
    data = {
        "queue": ctx.queue.stats(),
        "staging": ctx.staging.counts(),
        "properties": ctx.property_store.counts(),
    }
    if args.json:
        _print_json(data)
        return 0
    q = data["queue"]
    print(f"{BOLD}Queue{RESET}: {q['queued']} queued, {q['sent']} sent, {q['failed']} failed, "
          f"{q['sentThisHour']}/{q['rateLimitPerHour']} this hour")
    print(f"{BOLD}Staging{RESET}: " + ", ".join(f"{k} {v}" for k, v in data["staging"].items()))
    print(f"{BOLD}Properties{RESET}:")
    for status, count in data["properties"].items():
        if count:
            print(f"  {STATUS_META[OutreachStatus(status)].label:<32} {count}")
    return 0


def cmd_runs(ctx, args) -> int:
    runs = ctx.engine.get_recent_runs(args.limit)
    if args.json:
        _print_json([r.to_dict() for r in runs])
        return 0
    if not runs:
        print(f"{DIM}No workflow runs.{RESET}")
    for run in runs:
        print(f"  {run.id} {run.started_at[:16]} {run.status.value:<10} {run.property_name}"
              + (f"  {YELLOW}{run.error}{RESET}" if run.error else ""))
    return 0


def cmd_sweep(ctx, args) -> int:
    stale = ctx.engine.sweep_stale()
    print(f"Swept {len(stale)} stale runs")
    return 0


COMMANDS = {
    "discover-street": cmd_discover_street,
    "discover-scaffolding": cmd_discover_scaffolding,
    "staging": cmd_staging,
    "reject": cmd_reject,
    "approve": cmd_approve,
    "push": cmd_push,
    "research": cmd_research,
    "mark-ready": cmd_mark_ready,
    "drain": cmd_drain,
    "followups": cmd_followups,
    "stats": cmd_stats,
    "runs": cmd_runs,
    "sweep": cmd_sweep,
}


if __name__ == "__main__":
    main()
