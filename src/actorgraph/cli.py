from __future__ import annotations

import dataclasses
import json
import logging
import signal
import sqlite3
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from rich.text import Text

from . import store
from .config import Settings
from .errors import ActorGraphError, OracleUnavailable
from .graph.builder import GraphBuilder
from .graph.dedup import ActorDeduplicator
from .graph.evidence import EvidenceAccumulator
from .ingest.runner import IngestOptions, ingest_into_db
from .oracle.extractor import ExtractionOracle
from .oracle.llm import build_backends, list_models
from .pipeline.queue import ExtractionQueue, QueueStatus, RetryPolicy
from .pipeline.worker import ExtractionWorker


app = typer.Typer(add_completion=False, help="Actor knowledge graph: extraction queue, evidence simmering, graph views.")
console = Console()

DB_OPTION = typer.Option(None, "--db", help="SQLite DB path (default: ACTORGRAPH_DB_PATH)")
SCOPE_OPTION = typer.Option(..., "--scope", "-s", help="Scope name")


@app.callback()
def main(
    log_level: str | None = typer.Option(None, "--log-level", help="Logging level (default: ACTORGRAPH_LOG_LEVEL)"),
):
    settings = Settings()
    logging.basicConfig(
        level=(log_level or settings.log_level).upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )


def _connect(db: Path | None) -> sqlite3.Connection:
    conn = store.connect(db or Settings().db_path)
    store.init_db(conn)
    return conn


def _scope_id(conn: sqlite3.Connection, scope: str) -> int:
    scope_id = store.get_scope_id(conn, scope)
    if scope_id is None:
        console.print(f"Unknown scope: {scope}", style="red")
        console.print("  Fix: run `actorgraph ingest --scope ...` first.", style="yellow")
        raise typer.Exit(code=2)
    return scope_id


def _oracle(settings: Settings, no_llm: bool) -> ExtractionOracle:
    if no_llm:
        return ExtractionOracle()
    return ExtractionOracle(
        build_backends(
            base_url=settings.ollama_base_url,
            models=settings.ollama_models,
            temperature=settings.ollama_temperature,
            timeout_s=settings.ollama_timeout_s,
        )
    )


@app.command()
def ingest(
    input: Path = typer.Option(..., "--input", exists=True, file_okay=False, dir_okay=True),
    scope: str = SCOPE_OPTION,
    db: Path | None = DB_OPTION,
    enqueue: bool = typer.Option(True, "--enqueue/--no-enqueue", help="Queue changed documents for extraction"),
):
    """Ingest Markdown/text files into a scope and queue them for extraction."""
    conn = _connect(db)
    try:
        res = ingest_into_db(conn=conn, options=IngestOptions(input_dir=input, scope=scope, enqueue=enqueue))
    finally:
        conn.close()

    console.print(f"Documents seen: {res['documents_seen']}")
    console.print(f"Documents changed: {res['documents_changed']}")
    console.print(f"Enqueued: {res['enqueued']}")
    if res["enqueued"]:
        console.print("Next: run `actorgraph work` to extract actors.")


@app.command()
def enqueue(
    doc_ids: list[int] = typer.Argument(None, help="Document ids"),
    scope: str | None = typer.Option(None, "--scope", "-s", help="Enqueue every document in this scope"),
    db: Path | None = DB_OPTION,
):
    """Queue documents for extraction."""
    if not doc_ids and scope is None:
        raise typer.BadParameter("Provide document ids or --scope")

    conn = _connect(db)
    try:
        ids = list(doc_ids or [])
        if scope is not None:
            ids.extend(d.doc_id for d in store.iter_documents(conn, scope_id=_scope_id(conn, scope)))
        queue = ExtractionQueue(conn)
        item_ids = {queue.enqueue(d) for d in ids}
    finally:
        conn.close()

    console.print(f"Queue items: {len(item_ids)} for {len(ids)} document(s)")


@app.command()
def work(
    db: Path | None = DB_OPTION,
    once: bool = typer.Option(False, "--once", help="Drain the queue once and exit"),
    no_llm: bool = typer.Option(False, "--no-llm", help="Pattern extraction only"),
):
    """Run the extraction worker."""
    settings = Settings()
    conn = _connect(db)
    try:
        queue = ExtractionQueue(conn, policy=RetryPolicy(max_attempts=settings.max_attempts))
        worker = ExtractionWorker(
            queue=queue,
            oracle=_oracle(settings, no_llm),
            evidence=EvidenceAccumulator(conn),
            poll_interval_s=settings.poll_interval_s,
            extract_timeout_s=settings.extract_timeout_s,
        )
        if once:
            queue.requeue_stale()
            n = 0
            while True:
                item = worker.run_once()
                if item is None:
                    break
                n += 1
                style = "green" if item.status is QueueStatus.COMPLETE else "yellow"
                console.print(f"item {item.id} (doc {item.document_id}): {item.status.value}", style=style, markup=False)
            console.print(f"Processed {n} item(s)")
        else:
            # SIGTERM lets the in-flight item finish; Ctrl-C hands it back to the queue.
            signal.signal(signal.SIGTERM, lambda signum, frame: worker.stop())
            try:
                worker.run_forever()
            except KeyboardInterrupt:
                pass
            console.print("Stopped.")
    finally:
        conn.close()


@app.command("queue-stats")
def queue_stats(
    db: Path | None = DB_OPTION,
    status: str | None = typer.Option(None, "--status", help="Also list items with this status"),
    limit: int = typer.Option(20, help="Max items to list"),
):
    """Show the extraction queue histogram."""
    conn = _connect(db)
    try:
        queue = ExtractionQueue(conn)
        stats = queue.get_stats()
        items = queue.list_items(status, limit=limit) if status else []
    finally:
        conn.close()

    table = Table(title="Extraction Queue")
    table.add_column("status")
    table.add_column("count", justify="right")
    for k, v in stats.items():
        table.add_row(k, str(v))
    console.print(table)

    if items:
        t2 = Table(title=f"Items ({status})")
        t2.add_column("id", justify="right")
        t2.add_column("doc", justify="right")
        t2.add_column("attempts", justify="right")
        t2.add_column("error")
        for it in items:
            t2.add_row(str(it.id), str(it.document_id), str(it.attempts), Text(it.error_message or ""))
        console.print(t2)


@app.command("retry-dead")
def retry_dead(db: Path | None = DB_OPTION):
    """Move dead items back to pending with a fresh attempt budget."""
    conn = _connect(db)
    try:
        n = ExtractionQueue(conn).retry_dead()
    finally:
        conn.close()
    console.print(f"Reset {n} dead item(s)")


@app.command("retry-failed")
def retry_failed(db: Path | None = DB_OPTION):
    """Move failed items back to pending."""
    conn = _connect(db)
    try:
        n = ExtractionQueue(conn).retry_failed()
    finally:
        conn.close()
    console.print(f"Reset {n} failed item(s)")


@app.command()
def extract(
    text: str | None = typer.Argument(None, help="Text to extract from"),
    file: Path | None = typer.Option(None, "--file", exists=True, file_okay=True, dir_okay=False),
    no_llm: bool = typer.Option(False, "--no-llm", help="Pattern extraction only"),
):
    """One-off extraction; prints JSON. Nothing is stored."""
    if text is None and file is None:
        raise typer.BadParameter("Provide TEXT or --file")
    content = file.read_text(encoding="utf-8", errors="replace") if file is not None else str(text)

    result = _oracle(Settings(), no_llm).extract(content)
    out = dataclasses.asdict(result)
    out["confidence"] = result.confidence
    console.print_json(json.dumps(out, ensure_ascii=False))


@app.command()
def inbox(
    scope: str = SCOPE_OPTION,
    db: Path | None = DB_OPTION,
    sort: str = typer.Option("evidence", "--sort", help="evidence | confidence"),
    min_evidence: int = typer.Option(0, help="Only suggestions with at least this much evidence"),
    include_dismissed: bool = typer.Option(False, "--include-dismissed"),
    limit: int = typer.Option(50),
):
    """Show pending relationship suggestions."""
    conn = _connect(db)
    try:
        acc = EvidenceAccumulator(conn)
        res = acc.get_suggestions_inbox(
            _scope_id(conn, scope),
            include_dismissed=include_dismissed,
            min_evidence=min_evidence,
            sort_by=sort,
            limit=limit,
        )
    finally:
        conn.close()

    table = Table(title=f"Suggestions ({scope})")
    table.add_column("id", justify="right")
    table.add_column("source")
    table.add_column("type")
    table.add_column("target")
    table.add_column("evidence", justify="right")
    table.add_column("conf", justify="right")
    table.add_column("sample")
    for s in res["suggestions"]:
        sample = s["context_samples"][0] if s["context_samples"] else ""
        if len(sample) > 80:
            sample = sample[:80].rstrip() + "..."
        table.add_row(
            str(s["id"]) + (" (dismissed)" if s["is_dismissed"] else ""),
            Text(str(s["source_name"])),
            s["relationship_type"],
            Text(str(s["target_name"])),
            str(s["evidence_count"]),
            f"{s['confidence']:.2f}",
            Text(sample),
        )
    console.print(table)

    st = res["stats"]
    console.print(
        f"total={st['total']} strong_evidence={st['strong_evidence']} "
        f"high_confidence={st['high_confidence']} dismissed={st['dismissed']} "
        f"avg_evidence={float(st['avg_evidence']):.1f}",
        markup=False,
    )


def _review(action: str, suggestion_id: int, scope: str, db: Path | None) -> None:
    conn = _connect(db)
    try:
        acc = EvidenceAccumulator(conn)
        fn = {
            "approve": acc.approve_suggestion,
            "reject": acc.reject_suggestion,
            "dismiss": acc.dismiss_suggestion,
        }[action]
        ok = fn(suggestion_id, _scope_id(conn, scope))
    finally:
        conn.close()

    if not ok:
        console.print(f"Suggestion {suggestion_id} not found or already reviewed.", style="yellow")
        raise typer.Exit(code=1)
    console.print(f"Suggestion {suggestion_id}: {action}d", style="green")


@app.command()
def approve(suggestion_id: int = typer.Argument(...), scope: str = SCOPE_OPTION, db: Path | None = DB_OPTION):
    """Confirm a suggestion as a relationship."""
    _review("approve", suggestion_id, scope, db)


@app.command()
def reject(suggestion_id: int = typer.Argument(...), scope: str = SCOPE_OPTION, db: Path | None = DB_OPTION):
    """Delete a suggestion; new evidence may bring it back."""
    _review("reject", suggestion_id, scope, db)


@app.command()
def dismiss(suggestion_id: int = typer.Argument(...), scope: str = SCOPE_OPTION, db: Path | None = DB_OPTION):
    """Dismiss a suggestion for good."""
    _review("dismiss", suggestion_id, scope, db)


@app.command()
def promotions(
    scope: str = SCOPE_OPTION,
    db: Path | None = DB_OPTION,
    min_evidence: int = typer.Option(3),
    min_confidence: float = typer.Option(0.7),
    apply: bool = typer.Option(False, "--approve", help="Approve every candidate"),
):
    """List suggestions that qualify for promotion."""
    conn = _connect(db)
    try:
        acc = EvidenceAccumulator(conn)
        scope_id = _scope_id(conn, scope)
        candidates = acc.check_auto_promotions(scope_id, min_evidence=min_evidence, min_confidence=min_confidence)
        approved = 0
        if apply:
            for c in candidates:
                approved += int(acc.approve_suggestion(c["id"], scope_id))
    finally:
        conn.close()

    for c in candidates:
        console.print(
            f"- #{c['id']} {c['source_name']} --{c['relationship_type']}--> {c['target_name']} "
            f"(evidence={c['evidence_count']}, conf={c['confidence']:.2f})",
            markup=False,
        )
    console.print(f"Candidates: {len(candidates)}" + (f", approved: {approved}" if apply else ""))


@app.command()
def dedup(
    scope: str = SCOPE_OPTION,
    db: Path | None = DB_OPTION,
    threshold: float = typer.Option(0.8, help="Name similarity threshold (0-1)"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Only show the merge groups"),
):
    """Merge near-duplicate actors."""
    conn = _connect(db)
    try:
        dd = ActorDeduplicator(conn, threshold=threshold)
        scope_id = _scope_id(conn, scope)
        if dry_run:
            for group in dd.find_groups(scope_id):
                names = ", ".join(str(a["name"]) for a in group[1:])
                console.print(f"- {group[0]['name']} <= {names}", markup=False)
            return
        res = dd.merge_duplicates(scope_id)
    finally:
        conn.close()

    for g in res.groups:
        console.print(f"- {g.primary} <= {', '.join(g.merged)}", markup=False)
    console.print(f"Merged {res.merged} actor(s)")


@app.command()
def graph(
    scope: str = SCOPE_OPTION,
    db: Path | None = DB_OPTION,
    actor_type: list[str] = typer.Option(None, "--type", help="Only these actor types (repeatable)"),
    implicit: bool = typer.Option(True, "--implicit/--no-implicit", help="Include team/org/tag edges"),
    min_confidence: float = typer.Option(0.0),
    as_json: bool = typer.Option(False, "--json", help="Print the full graph as JSON"),
):
    """Build the presentation graph for a scope."""
    conn = _connect(db)
    try:
        gb = GraphBuilder(conn)
        scope_id = _scope_id(conn, scope)
        g = gb.build_graph(
            scope_id,
            actor_types=actor_type or None,
            include_implicit=implicit,
            min_confidence=min_confidence,
        )
        stats = gb.get_stats(scope_id)
    finally:
        conn.close()

    if as_json:
        console.print_json(json.dumps(g, ensure_ascii=False))
        return

    table = Table(title=f"Graph ({scope})")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Nodes", str(len(g["nodes"])))
    table.add_row("Edges", str(len(g["edges"])))
    for k in ("explicit", "implicit_team", "implicit_org", "tag_cooccurrence"):
        table.add_row(f"  {k}", str(stats[k]))
    console.print(table)


@app.command()
def hubs(
    scope: str = SCOPE_OPTION,
    db: Path | None = DB_OPTION,
    limit: int = typer.Option(10),
):
    """Most connected actors."""
    conn = _connect(db)
    try:
        rows = GraphBuilder(conn).get_hubs(_scope_id(conn, scope), limit=limit)
    finally:
        conn.close()

    table = Table(title=f"Hubs ({scope})")
    table.add_column("#", justify="right", width=4)
    table.add_column("actor")
    table.add_column("type")
    table.add_column("degree", justify="right")
    for i, h in enumerate(rows, start=1):
        table.add_row(str(i), Text(h["name"]), h["type"], str(h["degree"]))
    console.print(table)


@app.command()
def doctor(
    db: Path | None = typer.Option(None, "--db", help="Optional DB path to check"),
    base_url: str | None = typer.Option(None, "--base-url", help="Ollama base URL"),
):
    """Check Ollama + DB and print actionable fixes."""
    settings = Settings()
    ollama_url = (base_url or settings.ollama_base_url).rstrip("/")
    ok = True

    console.print("Ollama:")
    try:
        models = list_models(ollama_url)
    except OracleUnavailable as e:
        console.print(f"- {e}", style="red")
        console.print("  Fix: start Ollama (`ollama serve`) then retry. Pattern extraction still works.", style="yellow")
        ok = False
    else:
        console.print(f"- Server reachable at {ollama_url} ({len(models)} model(s) installed).", style="green")
        for m in settings.ollama_models:
            if m in models or f"{m}:latest" in models:
                console.print(f"- Model OK: {m}", style="green")
            else:
                console.print(f"- Missing model: {m}", style="yellow")
                console.print(f"  Fix: `ollama pull {m}`", style="yellow")
                ok = False

    if db is not None:
        console.print("\nDB:")
        if not db.exists():
            console.print(f"- Missing DB: {db}", style="red")
            console.print("  Fix: run `actorgraph ingest --input ... --scope ... --db ...`", style="yellow")
            ok = False
        else:
            conn = _connect(db)
            try:
                for table_name in ("documents", "extraction_queue", "actors", "suggestions", "relationships"):
                    n = int(conn.execute(f"SELECT COUNT(*) AS n FROM {table_name}").fetchone()["n"])
                    console.print(f"- {table_name}: {n}", style="green" if n > 0 else "yellow")
                stats = ExtractionQueue(conn).get_stats()
                if stats["dead"]:
                    console.print(f"- {stats['dead']} dead queue item(s)", style="yellow")
                    console.print("  Fix: `actorgraph retry-dead` once the cause is fixed.", style="yellow")
            except (sqlite3.Error, ActorGraphError) as e:
                console.print(f"- {e}", style="red")
                ok = False
            finally:
                conn.close()

    if not ok:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
