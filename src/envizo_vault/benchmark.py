"""
Secret store benchmark CLI.

Usage:
    envizo-benchmark

Or run directly:
    python -m envizo_vault.benchmark

Configuration:
    ENVIZO_MASTER_KEY must be set (environment or .env file). DATABASE_URL
    switches the run to the PostgreSQL backend.
"""

from __future__ import annotations

import asyncio
import sys
import time

from envizo_vault.codec import ExportFormat
from envizo_vault.config import load_config
from envizo_vault.errors import ConfigError, ConflictError
from envizo_vault.models import Actor, AuditFilter, EnvironmentId, Outcome
from envizo_vault.vault import open_vault

PROJECT_ID = "bench-project"


def _banner(title: str) -> None:
    print("+" + "-" * 68 + "+")
    print(f"|  {title}" + " " * max(0, 66 - len(title)) + "|")
    print("+" + "-" * 68 + "+")


async def run_benchmark() -> None:
    """Run the secret store benchmark."""
    print("=== Secret Store Benchmark ===\n")

    try:
        config = load_config()
    except ConfigError as e:
        print(f"ERROR: {e}")
        sys.exit(1)

    try:
        user_input = input("Enter number of keys to test (default: 200): ").strip()
        test_quantity = int(user_input) if user_input else 200
    except (ValueError, EOFError):
        test_quantity = 200
    test_quantity = max(test_quantity, 1)
    print(f"Testing with {test_quantity} keys on {config.storage_backend} storage\n")

    vault = await open_vault(config)
    owner = Actor("bench-owner")
    env = EnvironmentId.DEVELOPMENT
    store = vault.store

    try:
        await store.create_project(PROJECT_ID, "Benchmark", owner, [env])
    except ConflictError:
        print(f"[STARTUP] Reusing existing project {PROJECT_ID}")

    print("=" * 70)
    print("                    BENCHMARK START")
    print("=" * 70 + "\n")

    # ========================================================================
    # Demo 1: Concurrent puts across distinct keys
    # ========================================================================
    _banner(f"Demo 1: Concurrent puts across {test_quantity} keys")
    keys = [f"BENCH_KEY_{i:05d}" for i in range(test_quantity)]

    demo1_start = time.perf_counter()
    await asyncio.gather(
        *(store.put(PROJECT_ID, env, k, f"value-{k}-a8f3c2d9e1b7", owner) for k in keys)
    )
    demo1_duration = time.perf_counter() - demo1_start

    print(f"[OK] Wrote {test_quantity} keys")
    print(f"[PERF] Time: {demo1_duration * 1000:.3f}ms | Rate: {test_quantity / demo1_duration:.2f} ops/sec\n")

    # ========================================================================
    # Demo 2: Contended puts on one hot key
    # ========================================================================
    _banner(f"Demo 2: {test_quantity} concurrent puts on one key")
    hot_key = "BENCH_HOT_KEY"

    demo2_start = time.perf_counter()
    results = await asyncio.gather(
        *(store.put(PROJECT_ID, env, hot_key, f"hot-value-{i:06d}-x9", owner) for i in range(test_quantity))
    )
    demo2_duration = time.perf_counter() - demo2_start

    versions = sorted(r.version for r in results)
    first = versions[0]
    monotonic = versions == list(range(first, first + test_quantity))
    print(f"[{'OK' if monotonic else 'ERROR'}] Versions {versions[0]}..{versions[-1]}, gap-free: {monotonic}")
    print(f"[PERF] Time: {demo2_duration * 1000:.3f}ms | Rate: {test_quantity / demo2_duration:.2f} ops/sec\n")

    # ========================================================================
    # Demo 3: Reads and export
    # ========================================================================
    _banner("Demo 3: List and export")

    list_start = time.perf_counter()
    listed = await store.list(PROJECT_ID, env, owner)
    list_duration = time.perf_counter() - list_start

    export_start = time.perf_counter()
    payload = await vault.codec.export(PROJECT_ID, env, ExportFormat.JSON, owner)
    export_duration = time.perf_counter() - export_start

    print(f"[OK] Listed {len(listed)} secrets, exported {len(payload)} bytes")
    print(f"[PERF] List:   {list_duration * 1000:.3f}ms")
    print(f"[PERF] Export: {export_duration * 1000:.3f}ms\n")

    # ========================================================================
    # Summary
    # ========================================================================
    print("=" * 70)
    print("                    BENCHMARK SUMMARY")
    print("=" * 70 + "\n")

    stats = await vault.audit.stats(AuditFilter(project_id=PROJECT_ID))
    denied = await vault.audit.count(AuditFilter(project_id=PROJECT_ID, outcome=Outcome.DENIED))
    print("Audit Statistics:")
    print(f"  - Total entries: {stats['total_entries']}")
    print(f"  - Denied: {denied}")
    for operation, count in sorted(stats["by_operation"].items()):
        print(f"  - {operation}: {count}")

    print("\nTest Configuration:")
    print(f"  - Keys tested: {test_quantity}")
    print("  - Crypto: AES-256-GCM, HKDF-SHA256 per environment, AAD = secret identity")
    print("  - Writes: serialized per key, independent across keys")

    print("\n" + "=" * 70)
    print("                    BENCHMARK COMPLETE")
    print("=" * 70 + "\n")

    await vault.close()


def main() -> None:
    """CLI entry point for envizo-benchmark command."""
    asyncio.run(run_benchmark())


if __name__ == "__main__":
    main()
