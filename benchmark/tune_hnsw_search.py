#!/usr/bin/env python3
"""
Test different ef_search values on a single HNSW build.
Builds once, reopens from the saved snapshot, then varies ef to find the
recall/latency tradeoff.
"""
import argparse
import os
import sys
import time
from pathlib import Path

import numpy as np

sys.path.insert(0, str(Path(__file__).parent.parent))
from sqlitehnsw import IndexConfig, VectorStore

K = 100
N_QUERIES = 100
SEED = 42


def make_data(n_vectors, dim):
    print(f"Generating {n_vectors:,} random vectors (dim={dim})...")
    rng = np.random.default_rng(SEED)
    train_embs = rng.standard_normal((n_vectors, dim)).astype(np.float32)
    test_embs = rng.standard_normal((N_QUERIES, dim)).astype(np.float32)

    # Ground truth
    print(f"  Computing brute-force top-{K}...", end=" ", flush=True)
    t0 = time.time()
    train_normalized = train_embs / np.linalg.norm(train_embs, axis=1, keepdims=True)
    test_normalized = test_embs / np.linalg.norm(test_embs, axis=1, keepdims=True)
    sim_matrix = test_normalized @ np.ascontiguousarray(train_normalized.T)
    ground_truth = []
    for i in range(N_QUERIES):
        top_k_idx = np.argpartition(sim_matrix[i], -K)[-K:]
        top_k_idx = top_k_idx[np.argsort(sim_matrix[i, top_k_idx])[::-1]]
        ground_truth.append([f"doc{x}" for x in top_k_idx])
    del sim_matrix
    print(f"{time.time()-t0:.1f}s")

    return train_embs, test_embs, ground_truth


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--n-vectors", type=int, default=10000)
    parser.add_argument("--dim", type=int, default=128)
    parser.add_argument("--ef-construction", type=int, default=100)
    parser.add_argument("--m", type=int, default=16)
    parser.add_argument("--ef-search", type=int, nargs="+",
                        default=[100, 200, 300, 400, 500])
    args = parser.parse_args()

    train_embs, test_embs, ground_truth = make_data(args.n_vectors, args.dim)

    db_path = f"/tmp/sqlitehnsw_tune_{args.n_vectors}.db"
    if os.path.exists(db_path):
        os.remove(db_path)

    config = IndexConfig(
        dimension=args.dim, db_path=db_path,
        m=args.m, ef_construction=args.ef_construction, seed=SEED,
    )

    # Build once
    print(f"\nBuilding HNSW (m={args.m}, ef_c={args.ef_construction})...")
    t0 = time.time()
    with VectorStore.open(config) as store:
        for i, vec in enumerate(train_embs):
            store.upsert_vector(f"doc{i}", vec)
    build_time = time.time() - t0

    t0 = time.time()
    store = VectorStore.open(config)
    open_time = time.time() - t0
    db_size_mb = os.path.getsize(db_path) / (1024 * 1024)
    print(f"  Built in {build_time:.1f}s  reopened in {open_time:.2f}s  DB={db_size_mb:.0f}MB")

    # Test different ef_search values
    print(f"\n{'ef_search':>10} {'R@10':>6} {'R@100':>6}  "
          f"{'avg(ms)':>8} {'p99(ms)':>8} {'QPS':>7}")
    print("-" * 55)

    for ef_s in args.ef_search:
        # Warmup
        for i in range(3):
            store.query(test_embs[i], k=K, ef=ef_s)

        latencies = []
        recalls_10 = []
        recalls_100 = []
        for i in range(N_QUERIES):
            t0 = time.time()
            results = store.query(test_embs[i], k=K, ef=ef_s)
            latencies.append(time.time() - t0)

            result_ids = set(r.document_id for r in results)
            gt = ground_truth[i]
            recalls_100.append(len(result_ids & set(gt)) / min(K, len(gt)))
            result_ids_10 = set(r.document_id for r in results[:10])
            recalls_10.append(len(result_ids_10 & set(gt[:10])) / min(10, len(gt[:10])))

        r10 = float(np.mean(recalls_10))
        r100 = float(np.mean(recalls_100))
        avg_ms = float(np.mean(latencies)) * 1000
        p99_ms = float(np.percentile(latencies, 99)) * 1000
        qps = 1.0 / float(np.mean(latencies))
        print(f"{ef_s:>10} {r10:>6.4f} {r100:>6.4f}  "
              f"{avg_ms:>8.1f} {p99_ms:>8.1f} {qps:>7.1f}")

    store.close()
    if os.path.exists(db_path):
        os.remove(db_path)


if __name__ == "__main__":
    main()
