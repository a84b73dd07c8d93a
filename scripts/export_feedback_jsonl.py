import json
import argparse
from sqlalchemy import select
from resonance_loop.personalization.models import create_session, FeedbackRecord


def export_jsonl(out_path: str = "feedback_records.jsonl", db_url: str | None = None,
                 max_fulfillment: float = 1.0) -> int:
    """Dump feedback records (oldest first) with their fused scores for offline review."""
    Session = create_session(db_url)
    s = Session()
    stmt = (
        select(FeedbackRecord)
        .where(FeedbackRecord.fulfillment_score <= max_fulfillment)
        .order_by(FeedbackRecord.created_at, FeedbackRecord.id)
    )
    count = 0
    with open(out_path, "w", encoding="utf-8") as f:
        for rec in s.execute(stmt).scalars():
            entry = {
                "user_id": rec.user_id,
                "candidate_id": rec.candidate_id,
                "created_at": rec.created_at.isoformat() if rec.created_at else None,
                "fulfillment_score": rec.fulfillment_score,
                "confidence": rec.confidence,
                "weight_delta": rec.weight_delta,
                "resonance_delta": rec.resonance_delta,
                "signals": rec.signals,
            }
            f.write(json.dumps(entry, ensure_ascii=False) + "\n")
            count += 1
    s.close()
    print(f"Exported {count} feedback records to {out_path}")
    return count


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--out", default="feedback_records.jsonl")
    parser.add_argument("--db-url", default=None)
    parser.add_argument("--max_fulfillment", type=float, default=1.0,
                        help="Only export records at or below this fulfillment score")
    args = parser.parse_args()
    export_jsonl(args.out, args.db_url, max_fulfillment=args.max_fulfillment)
