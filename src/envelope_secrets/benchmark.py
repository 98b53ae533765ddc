"""
Secret store benchmark CLI.

Usage:
    secrets-benchmark

Or run directly:
    python -m envelope_secrets.benchmark

PostgreSQL setup:
    Set DATABASE_URL environment variable or .env file; tables are created
    on startup. Without DATABASE_URL the in-memory backend is used.
"""

from __future__ import annotations

import asyncio
import sys
import time
from dataclasses import dataclass
from datetime import timedelta

from .config import SecretStoreConfig
from .errors import ConfigError, NotFoundError, StorageError
from .manager import SecretManager
from .postgres_storage import PostgresBackend


@dataclass
class BenchmarkReport:
    """Counts and timings of one benchmark run."""

    secrets_created: int
    reads_succeeded: int
    reads_rejected: int
    keys_minted: int
    swept_entries: int
    create_seconds: float
    read_seconds: float


def _rate(count: int, seconds: float) -> str:
    return f"{count / seconds:.2f}" if seconds > 0 else "inf"


async def run_benchmark(
    manager: SecretManager, test_quantity: int = 125, max_reads: int = 3
) -> BenchmarkReport:
    """
    Run the benchmark rounds against ``manager``.

    Each secret gets ``max_reads`` reads; the read round fires
    ``max_reads + 1`` concurrent reads per secret, so exactly one per secret
    must be rejected.
    """
    print("=" * 70)
    print("                    BENCHMARK START")
    print("=" * 70 + "\n")

    # ========================================================================
    # Round 1: Create secrets
    # ========================================================================
    print("+" + "-" * 68 + "+")
    print(f"|  Round 1: Create {test_quantity} Secrets" + " " * (41 - len(str(test_quantity))) + "|")
    print("+" + "-" * 68 + "+")

    created = []
    create_start = time.perf_counter()
    for i in range(test_quantity):
        created.append(
            await manager.create_secret(
                f"benchmark secret {i}".encode(),
                ttl=timedelta(minutes=5),
                max_reads=max_reads,
            )
        )
        if (i + 1) % 25 == 0 or (i + 1) == test_quantity:
            print(f"  Progress: {i + 1}/{test_quantity}")
    create_seconds = time.perf_counter() - create_start

    print(f"[OK] Created {test_quantity} secrets with {max_reads} reads each")
    print(f"[PERF] Time: {create_seconds * 1000:.3f}ms | Rate: {_rate(test_quantity, create_seconds)} ops/sec\n")

    # ========================================================================
    # Round 2: Concurrent reads past the budget
    # ========================================================================
    print("+" + "-" * 68 + "+")
    print("|  Round 2: Concurrent Reads (budget + 1 per secret)                |")
    print("+" + "-" * 68 + "+")

    read_start = time.perf_counter()
    results = await asyncio.gather(
        *(
            manager.read_secret(secret.entry_id, secret.key)
            for secret in created
            for _ in range(max_reads + 1)
        ),
        return_exceptions=True,
    )
    read_seconds = time.perf_counter() - read_start

    succeeded = sum(1 for r in results if not isinstance(r, BaseException))
    rejected = sum(1 for r in results if isinstance(r, NotFoundError))
    unexpected = [r for r in results if isinstance(r, BaseException) and not isinstance(r, NotFoundError)]

    print(f"[OK] {succeeded} reads served, {rejected} rejected as not found")
    if unexpected:
        print(f"[ERROR] {len(unexpected)} reads failed: {unexpected[0]!r}")
    print(f"[PERF] Time: {read_seconds * 1000:.3f}ms | Rate: {_rate(len(results), read_seconds)} ops/sec\n")

    # ========================================================================
    # Round 3: Mint additional keys
    # ========================================================================
    print("+" + "-" * 68 + "+")
    print("|  Round 3: Mint Additional Keys                                    |")
    print("+" + "-" * 68 + "+")

    shared = await manager.create_secret(b"shared secret", max_reads=test_quantity + 1)
    mint_start = time.perf_counter()
    minted = 0
    for _ in range(min(10, test_quantity)):
        extra = await manager.mint_additional_key(shared.entry_id, shared.key, max_reads=1)
        await manager.read_secret(shared.entry_id, extra.key)
        minted += 1
    mint_seconds = time.perf_counter() - mint_start

    print(f"[OK] Minted and used {minted} single-read keys")
    print(f"[PERF] Time: {mint_seconds * 1000:.3f}ms | Rate: {_rate(minted, mint_seconds)} ops/sec\n")

    # ========================================================================
    # Round 4: Sweep
    # ========================================================================
    print("+" + "-" * 68 + "+")
    print("|  Round 4: Expiry Sweep                                            |")
    print("+" + "-" * 68 + "+")

    expired = await manager.create_secret(b"already expired", ttl=timedelta(seconds=-1))
    sweep_start = time.perf_counter()
    sweep = await manager.delete_expired()
    sweep_seconds = time.perf_counter() - sweep_start

    print(f"[OK] Swept {sweep.entries_deleted} entries, {sweep.keys_deleted} keys")
    print(f"[DEBUG] Expired entry id: {expired.entry_id}")
    print(f"[PERF] Time: {sweep_seconds * 1000:.3f}ms\n")

    print("=" * 70)
    print("                    BENCHMARK COMPLETE")
    print("=" * 70 + "\n")

    return BenchmarkReport(
        secrets_created=test_quantity,
        reads_succeeded=succeeded,
        reads_rejected=rejected,
        keys_minted=minted,
        swept_entries=sweep.entries_deleted,
        create_seconds=create_seconds,
        read_seconds=read_seconds,
    )


async def _main() -> None:
    print("=== Secret Store Benchmark ===\n")

    try:
        config = SecretStoreConfig.from_env()
    except ConfigError as e:
        print(f"ERROR: {e}")
        sys.exit(1)

    if config.database_url:
        try:
            backend = await PostgresBackend.connect(config.database_url)
            await backend.create_schema()
        except StorageError as e:
            print(f"ERROR: {e}")
            sys.exit(1)
        print("[STARTUP] Using PostgreSQL backend")
    else:
        print("[STARTUP] DATABASE_URL not set, using in-memory backend")
        backend = None

    try:
        user_input = input("Enter number of secrets to test (default: 125): ").strip()
        test_quantity = int(user_input) if user_input else 125
    except ValueError:
        test_quantity = 125
    print(f"Testing with {test_quantity} secrets\n")

    manager = SecretManager(backend, config) if backend else await SecretManager.new(config)
    try:
        await run_benchmark(manager, test_quantity)
    finally:
        await manager.close()


def main() -> None:
    """CLI entry point for secrets-benchmark command."""
    asyncio.run(_main())


if __name__ == "__main__":
    main()
