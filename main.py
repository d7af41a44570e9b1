"""rfpflow - RFP response pipeline

Simple CLI for chunking documents, ingesting reference URLs and running a CSV
of RFP questions through the default pipeline.
"""

import argparse
import asyncio
import csv
import sys
from pathlib import Path

from rfpflow.agents.orchestrator import build_orchestrator, create_job
from rfpflow.models.events import EventType, SSEEvent
from rfpflow.services.chunker import ContentChunker
from rfpflow.services.database import PostgresStore
from rfpflow.services.document_extractor import extract_document
from rfpflow.services.embeddings import get_embedding_service
from rfpflow.services.ingestion import ReferenceIngestor
from rfpflow.services.ingestion_queue import IngestionQueue
from rfpflow.services.notifier import EventBus
from rfpflow.services.pipelines import default_pipeline
from rfpflow.services.store import InMemoryStore


def print_event(event: SSEEvent):
    data = event.data
    event_type = event.event

    if event_type == EventType.JOB_STARTED:
        print(f"[*] Job started ({data.get('processed_rows')}/{data.get('total_rows')} rows done)")

    elif event_type == EventType.STEP_COMPLETED:
        print(f"  [+] Row {data.get('row_index')}: {data.get('step_name')} ({data.get('latency_ms')}ms)")

    elif event_type == EventType.ROW_PROCESSED:
        print(f"[~] Row {data.get('row_index')} processed, {data.get('progress')}% complete")

    elif event_type == EventType.PROCESSING_LOG:
        print(f"      {data.get('step')}: {data.get('message')}")

    elif event_type == EventType.PROCESSING_STATUS:
        print(f"[~] {data.get('target')}: {data.get('status')}")

    elif event_type == EventType.JOB_COMPLETED:
        print(f"\n[*] Job complete: {data.get('total_rows')} rows")

    elif event_type == EventType.JOB_ERROR:
        print(f"\n[!] Error: {data.get('message', 'Unknown error')}")


async def run_chunk(path: str, max_tokens: int | None = None):
    """Print the chunk table for a local file."""
    document = await extract_document(path, Path(path).name)
    chunker = ContentChunker(max_tokens=max_tokens)
    chunks = chunker.chunk(document.text, source_id=document.name)

    print(f"{document.name}: {len(document.text)} chars, {len(chunks)} chunks ({document.method})")
    print("-" * 50)
    for chunk in chunks:
        preview = " ".join(chunk.text.split())[:60]
        print(f"{chunk.index:>4}  {chunk.start_offset:>7}-{chunk.end_offset:<7} {chunk.token_count:>5} tok  {preview}")


async def run_ingest(urls: list[str]):
    """Queue the URLs, drain the queue and print its final status."""
    store = InMemoryStore()
    bus = EventBus()
    bus.subscribe(print_event, [EventType.PROCESSING_STATUS])
    ingestor = ReferenceIngestor(store, get_embedding_service(), notifier=bus)
    queue = IngestionQueue(store, ingestor, notifier=bus)

    for url in urls:
        result = await queue.queue_url(url)
        print(f"[+] {url}: {result.status.value}")

    await queue.drain()
    status = await queue.get_queue_status()
    print(f"\n{'='*50}")
    for name, count in status.items():
        print(f"{name:>12}: {count}")


async def run_csv(path: str, instructions: str | None = None):
    """Load a CSV of questions into an in-memory job and run it."""
    with open(path, newline="", encoding="utf-8-sig") as handle:
        records = list(csv.DictReader(handle))
    if not records:
        print(f"[!] No rows found in {path}")
        return 1

    store = InMemoryStore()
    bus = EventBus()
    bus.subscribe(print_event)
    pipeline = await store.save_pipeline(default_pipeline())
    job = await create_job(
        store,
        user_id="cli",
        pipeline_id=pipeline.id,
        records=records,
        name=Path(path).stem,
        rfp_instructions=instructions,
    )
    print(f"RFP job: {job.name} ({job.total_rows} rows)")
    print("-" * 50)

    orchestrator = build_orchestrator(store=store, notifier=bus)
    job = await orchestrator.start_job(job.id)

    for row in await store.get_rows(job.id):
        print(f"\n{'='*50}")
        print(f"ROW {row.row_index + 1}:")
        print(f"{'='*50}")
        answer = (row.enriched_data or {}).get(pipeline.steps[-1].name, "")
        print(answer or "(no answer)")
    return 0 if job.status.value == "completed" else 1


async def run_init_db():
    """Create the Postgres tables named by DATABASE_URL."""
    store = PostgresStore()
    try:
        await store.init_schema()
    finally:
        await store.close()
    print("[*] Schema ready")


def main():
    parser = argparse.ArgumentParser(description="rfpflow RFP response pipeline")
    subparsers = parser.add_subparsers(dest="command", required=True)

    chunk_parser = subparsers.add_parser("chunk", help="Print the chunks of a local file")
    chunk_parser.add_argument("file", help="Path to a text or office document")
    chunk_parser.add_argument("--max-tokens", type=int, help="Chunk size (default: from config)")

    ingest_parser = subparsers.add_parser("ingest", help="Ingest reference URLs")
    ingest_parser.add_argument("urls", nargs="+", help="URLs to queue")

    run_parser = subparsers.add_parser("run", help="Run a CSV of RFP questions")
    run_parser.add_argument("csv", help="CSV file with a question column")
    run_parser.add_argument("--instructions", "-i", help="RFP instructions passed to every step")

    subparsers.add_parser("init-db", help="Create the Postgres schema")

    args = parser.parse_args()

    if args.command == "chunk":
        asyncio.run(run_chunk(args.file, args.max_tokens))
    elif args.command == "ingest":
        asyncio.run(run_ingest(args.urls))
    elif args.command == "run":
        sys.exit(asyncio.run(run_csv(args.csv, args.instructions)))
    elif args.command == "init-db":
        asyncio.run(run_init_db())


if __name__ == "__main__":
    main()
