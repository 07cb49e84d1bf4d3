#!/usr/bin/env python3
"""
evaluate_with_evalset.py
Evaluates the text search endpoint against an evalset (queries with gt_ids or pid).
Output: recall@1, recall@5, MRR and latency; saves backend/eval_results.json
Usage:
    python backend/evaluate_with_evalset.py --eval backend/eval_queries.json --k 6
"""

import argparse
import json
import os
import sys
import time
from typing import Any, Dict, List

import requests

API = os.environ.get("SEARCH_API", "http://localhost:8000")
TIMEOUT = 10  # seconds for requests


def load_queries(path: str) -> List[Dict[str, Any]]:
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    out = []
    for q in raw:
        # accept gt_ids (list), pid (string), id or ids
        entry = {"q": q.get("q") or q.get("query") or q.get("title") or ""}
        if isinstance(q.get("gt_ids"), list):
            entry["gt_ids"] = [str(x) for x in q["gt_ids"]]
        elif q.get("pid"):
            entry["gt_ids"] = [str(q["pid"])]
        elif "id" in q:
            entry["gt_ids"] = [str(q["id"])]
        elif isinstance(q.get("ids"), list):
            entry["gt_ids"] = [str(x) for x in q["ids"]]
        else:
            entry["gt_ids"] = []
        out.append(entry)
    return out


def call_search(q: str, k: int) -> Dict[str, Any]:
    try:
        r = requests.post(API + "/search/text", params={"q": q, "limit": k, "taxonomyLimit": 0}, timeout=TIMEOUT)
        r.raise_for_status()
        return r.json()
    except requests.RequestException as e:
        print(f"Warning: search request failed for q='{q[:80]}' -> {e}", file=sys.stderr)
        return {"products": []}


def first_hit_rank(resp: Dict[str, Any], gt: set):
    for i, r in enumerate(resp.get("products", []), start=1):
        pid = (r.get("product") or {}).get("id")
        if pid is not None and str(pid) in gt:
            return i
    return None


def eval_queries(queries: List[Dict[str, Any]], k: int) -> Dict[str, float]:
    recall_at_1 = recall_at_5 = mrr_sum = 0.0
    n = 0
    total_time = 0.0

    for q in queries:
        gt = set(q.get("gt_ids", []))
        # no query or no ground truth -> skip
        if not q.get("q") or not gt:
            continue
        start = time.time()
        resp = call_search(q["q"], k=k)
        total_time += time.time() - start

        n += 1
        rank = first_hit_rank(resp, gt)
        if rank is None:
            continue
        if rank == 1:
            recall_at_1 += 1
        if rank <= 5:
            recall_at_5 += 1
        mrr_sum += 1.0 / rank

    if n == 0:
        return {"recall@1": 0.0, "recall@5": 0.0, "mrr": 0.0, "time": total_time, "n": 0}
    return {
        "recall@1": recall_at_1 / n,
        "recall@5": recall_at_5 / n,
        "mrr": mrr_sum / n,
        "time": total_time,
        "n": n,
    }


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--eval", required=True, help="JSON file with queries (gt_ids or pid).")
    parser.add_argument("--k", type=int, default=6, help="Results requested per query (default 6).")
    parser.add_argument("--out", default="backend/eval_results.json")
    args = parser.parse_args()

    queries = load_queries(args.eval)
    print(f"Queries to evaluate: {len(queries)}")
    stats = eval_queries(queries, k=args.k)
    print(f"recall@1={stats['recall@1']:.3f} recall@5={stats['recall@5']:.3f} "
          f"mrr={stats['mrr']:.3f} time={stats['time']:.1f}s over {stats['n']} queries")

    with open(args.out, "w", encoding="utf-8") as f:
        json.dump(stats, f, indent=2, ensure_ascii=False)
    print(f"Results saved to {args.out}")


if __name__ == "__main__":
    main()
