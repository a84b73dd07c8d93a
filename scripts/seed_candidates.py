"""Load candidates from a JSON file and compute their pattern vectors.

Input format (list of objects):
  [{"id": "breath-box", "name": "Box breathing", "state_filter": "anxious",
    "description": "slow paced breathing to settle the nervous system",
    "outcome_payload": {"type": "ritual", "duration_min": 5}}]

Existing candidates keep their learning weight and fatigue; only name,
filter, payload and pattern vector are refreshed.

Usage:
  python scripts/seed_candidates.py candidates.json --embedding-method hashing
"""

import json
import argparse
import logging

from resonance_loop.errors import DependencyError
from resonance_loop.personalization.models import create_session, Candidate
from resonance_loop.utils.embedding import EmbeddingService, VALID_METHODS

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def seed(entries, session_factory, embeddings: EmbeddingService) -> int:
    s = session_factory()
    count = 0
    try:
        for entry in entries:
            text = entry.get("description") or entry.get("name") or entry["id"]
            vector = None
            if embeddings.enabled:
                try:
                    vector = [float(v) for v in embeddings.embed(text)]
                except DependencyError as e:
                    logger.warning(f"No pattern vector for {entry['id']}: {e}")

            row = s.get(Candidate, entry["id"])
            if row is None:
                row = Candidate(id=entry["id"], learning_weight=float(entry.get("learning_weight", 0.5)),
                                fatigue_score=0.0, version=0)
                s.add(row)
            else:
                row.version = (row.version or 0) + 1
            row.name = entry.get("name", entry["id"])
            row.state_filter = entry.get("state_filter")
            row.outcome_payload = entry.get("outcome_payload", {})
            if vector is not None:
                row.pattern_vector = vector
            count += 1
        s.commit()
    finally:
        s.close()
    logger.info(f"Seeded {count} candidates")
    return count


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("path")
    parser.add_argument("--db-url", default=None)
    parser.add_argument("--embedding-method", choices=VALID_METHODS, default="hashing")
    parser.add_argument("--embedding-url", default=None)
    args = parser.parse_args()

    with open(args.path, encoding="utf-8") as f:
        entries = json.load(f)
    embeddings = EmbeddingService(method=args.embedding_method, url=args.embedding_url)
    seed(entries, create_session(args.db_url), embeddings)


if __name__ == "__main__":
    main()
