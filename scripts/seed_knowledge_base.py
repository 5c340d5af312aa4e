"""Seed the knowledge-base collection from a JSON Lines file of battlecard excerpts.

Each line is an object with ``content`` and optional ``competitor``,
``verticals``, ``title``, ``source_id`` and ``metadata`` fields.
"""

from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
from uuid import uuid4

from compintel import EmbeddingService, KnowledgeBase, Settings
from compintel.knowledge_base import KnowledgeChunk


def load_rows(path: Path) -> list[dict]:
    rows: list[dict] = []
    with path.open(encoding="utf-8") as handle:
        for line_number, line in enumerate(handle, start=1):
            line = line.strip()
            if not line:
                continue
            row = json.loads(line)
            if not isinstance(row, dict) or not str(row.get("content") or "").strip():
                raise ValueError(f"{path}:{line_number}: every row needs a non-empty 'content' field")
            rows.append(row)
    return rows


async def main(path: Path, collection_action: str, source_id: str | None) -> None:
    settings = Settings.from_env()
    print(f"[seed] Using embedding model '{settings.embedding_model}' ({settings.embedding_dimensions} dims).")
    embedding = EmbeddingService(settings)
    knowledge_base = KnowledgeBase.from_settings(settings)

    print(f"[seed] Ensuring collection '{knowledge_base.collection_name}' exists.")
    knowledge_base.ensure_collection()
    if collection_action == "replace-source":
        if not source_id:
            raise SystemExit("--source-id is required with --collection-action replace-source")
        print(f"[seed] Removing existing chunks for source '{source_id}'.")
        knowledge_base.delete_source(source_id)
    knowledge_base.ensure_payload_indexes()

    rows = load_rows(path)
    print(f"[seed] Embedding {len(rows)} excerpts...")
    try:
        vectors = await embedding.get_embeddings([row["content"] for row in rows])
    finally:
        await embedding.aclose()

    chunks = [
        KnowledgeChunk(
            id=str(uuid4()),
            vector=vector,
            content=row["content"].strip(),
            source_id=row.get("source_id") or source_id,
            title=row.get("title"),
            competitor=row.get("competitor"),
            verticals=list(row.get("verticals") or []),
            metadata=dict(row.get("metadata") or {}),
        )
        for row, vector in zip(rows, vectors)
    ]
    print(f"[seed] Upserting {len(chunks)} vectors to Qdrant...")
    knowledge_base.upsert(chunks)
    print(f"[seed] Collection now holds {knowledge_base.count()} chunks.")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("path", type=Path, help="JSON Lines file with one excerpt per line")
    parser.add_argument(
        "--collection-action",
        choices={"ensure", "replace-source"},
        default="ensure",
        help="'replace-source' deletes existing chunks of --source-id before ingesting",
    )
    parser.add_argument(
        "--source-id",
        type=str,
        default=None,
        help="Source identifier applied to rows that do not carry their own",
    )
    args = parser.parse_args()
    asyncio.run(main(args.path, args.collection_action, args.source_id))
