"""Visibility Intelligence - run engine CLI

Create and execute visibility runs, run the queue worker, or preview intents.
"""

import argparse
import asyncio
import signal
import uuid

import uvicorn

from app.config import EngineConfig
from app.models.visibility import Audit
from app.services import reporting
from app.services.database import PostgresRunStore
from app.services.domain import normalize_from_url
from app.services.orchestrator import RunOrchestrator
from app.services.store import get_run_store


async def _open_store():
    store = get_run_store()
    if isinstance(store, PostgresRunStore):
        await store.ensure_schema()
    return store


async def run_once(domain: str, project_id: str, sources: list[str] | None, max_intents: int | None):
    """Create a run for the domain and execute it in-process."""
    config = EngineConfig.from_settings()
    store = await _open_store()
    orchestrator = RunOrchestrator(store, config)

    domain_info = normalize_from_url(domain)
    audit = Audit(id=f"cli-{uuid.uuid4().hex[:12]}", project_id=project_id, domain=domain_info.hostname)
    await store.save_audit(audit)

    creation = await orchestrator.create_run(audit, sources=sources, max_intents=max_intents)
    run = creation.run
    print(f"Run {run.id} for {run.domain} ({len(creation.intents)} intents, sources: {', '.join(run.sources)})")
    print("-" * 50)

    if creation.reused:
        print("[*] Reusing recent successful run")
    else:
        outcome = await orchestrator.process_run(run.id)
        if outcome.skipped_sources:
            print(f"[~] Skipped sources: {', '.join(outcome.skipped_sources)}")
        if not outcome.ok:
            print(f"[!] Run failed: {outcome.error}")
            return

    await print_summary(run.id)


async def print_summary(run_id: str):
    store = await _open_store()
    run = await store.get_run(run_id)
    if run is None:
        print(f"[!] Run not found: {run_id}")
        return
    results = await store.list_results(run.id)
    summary = reporting.build_summary(run, results)

    print(f"\n[*] Status: {run.status.value}")
    print(f"   Score: {summary['overall_score']}")
    print(f"   Coverage: {summary['coverage']}")
    print(f"   Citations: {summary['counts']['total_citations']} ({summary['counts']['mentions']} audited)")
    if summary["top_intents"]:
        print("\n[+] Top intents:")
        for item in summary["top_intents"]:
            print(f"  {item['visibility_score']:>5}  [{item['source']}] {item['query'][:80]}")
    if summary["top_citations"]:
        print("\n[+] Top cited domains:")
        for item in summary["top_citations"]:
            print(f"  {item['count']:>4}  {item['domain']}")


async def preview_intents(domain: str, project_id: str, description: str | None, max_intents: int | None):
    config = EngineConfig.from_settings()
    store = await _open_store()
    orchestrator = RunOrchestrator(store, config)
    intents = await orchestrator.intent_generator.generate(
        project_id,
        normalize_from_url(domain),
        max_intents=max_intents,
        site_description=description,
    )
    print(f"[*] {len(intents)} intents")
    for intent in intents:
        print(f"  {intent.weight:.1f}  {intent.intent_type:<12} {intent.kind:<12} {intent.query}")


async def run_worker(once: bool = False):
    config = EngineConfig.from_settings()
    store = await _open_store()
    orchestrator = RunOrchestrator(store, config)

    if once:
        outcome = await orchestrator.tick()
        if outcome is None:
            print("[*] No queued runs")
        else:
            print(f"[+] Run {outcome.run_id}: {outcome.status}")
        return

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    print("[*] Worker polling for queued runs (Ctrl+C to stop)")
    await orchestrator.run_worker(stop)


def main():
    parser = argparse.ArgumentParser(description="Visibility Intelligence run engine")
    sub = parser.add_subparsers(dest="command", required=True)

    run_parser = sub.add_parser("run", help="Create and execute a run for a domain")
    run_parser.add_argument("domain", help="Domain or URL to audit")
    run_parser.add_argument("--project", "-p", default="cli", help="Project id")
    run_parser.add_argument("--sources", "-s", help="Comma-separated sources (default: from config)")
    run_parser.add_argument("--max-intents", "-n", type=int, help="Maximum intents")

    intents_parser = sub.add_parser("intents", help="Generate and print intents for a domain")
    intents_parser.add_argument("domain", help="Domain or URL")
    intents_parser.add_argument("--project", "-p", default="cli", help="Project id")
    intents_parser.add_argument("--description", "-d", help="Free-text site description")
    intents_parser.add_argument("--max-intents", "-n", type=int, help="Maximum intents")

    score_parser = sub.add_parser("score", help="Print the summary of a stored run")
    score_parser.add_argument("run_id", help="Run id")

    worker_parser = sub.add_parser("worker", help="Poll and execute queued runs")
    worker_parser.add_argument("--once", action="store_true", help="Evict stale runs, process one queued run and exit")

    serve_parser = sub.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8000)

    args = parser.parse_args()

    if args.command == "run":
        sources = [s.strip() for s in args.sources.split(",")] if args.sources else None
        asyncio.run(run_once(args.domain, args.project, sources, args.max_intents))
    elif args.command == "intents":
        asyncio.run(preview_intents(args.domain, args.project, args.description, args.max_intents))
    elif args.command == "score":
        asyncio.run(print_summary(args.run_id))
    elif args.command == "worker":
        asyncio.run(run_worker(args.once))
    elif args.command == "serve":
        uvicorn.run("app.main:app", host=args.host, port=args.port)


if __name__ == "__main__":
    main()
