#!/usr/bin/env python3
"""
Queue Admin — Inspect and control the shared delivery queue.

Talks to the same Redis store the bot processes use, so it works while
the bot is running.

Usage:
    python scripts/queue_admin.py stats              # Counts per state
    python scripts/queue_admin.py pause              # Stop claiming (enqueue still works)
    python scripts/queue_admin.py resume
    python scripts/queue_admin.py clear --yes        # Drop every waiting/delayed job
    python scripts/queue_admin.py recover            # Requeue jobs with expired leases
    python scripts/queue_admin.py job 42             # Show one job
"""
import argparse
import asyncio
import json
import os
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def print_stats(stats) -> None:
    print("\n╔══════════════════════════════════════╗")
    print("║  Delivery Queue                      ║")
    print("╠══════════════════════════════════════╣")
    print(f"║  Waiting     {stats.waiting:>10}              ║")
    print(f"║  Delayed     {stats.delayed:>10}              ║")
    print(f"║  Active      {stats.active:>10}              ║")
    print(f"║  Completed   {stats.completed:>10}              ║")
    print(f"║  Failed      {stats.failed:>10}              ║")
    print(f"║  Paused      {str(stats.paused):>10}              ║")
    print("╚══════════════════════════════════════╝")


async def run(args) -> int:
    from dotenv import load_dotenv
    load_dotenv()

    from config.settings import load_settings
    from database.redis_client import RedisConnection
    from job_queue.store_redis import RedisJobStore

    settings = load_settings(args.config)
    conn = RedisConnection(args.redis_url or settings.redis.url, settings.redis.max_connections)
    redis = await conn.connect()
    store = RedisJobStore(redis, settings.queue)
    try:
        if args.command == "stats":
            stats = await store.counts()
            if args.json:
                print(json.dumps(stats.model_dump()))
            else:
                print_stats(stats)
        elif args.command == "pause":
            await store.pause()
            print("Queue paused")
        elif args.command == "resume":
            await store.resume()
            print("Queue resumed")
        elif args.command == "clear":
            if not args.yes:
                print("Refusing to clear without --yes", file=sys.stderr)
                return 2
            removed = await store.clear()
            print(f"Removed {len(removed)} queued jobs")
        elif args.command == "recover":
            recovered = await store.recover_stalled()
            for stalled in recovered:
                print(f"  {stalled.job_id:>8}  → {stalled.state.value} (attempt {stalled.attempt})")
            print(f"Recovered {len(recovered)} stalled jobs")
        elif args.command == "job":
            job = await store.get_job(args.job_id)
            if job is None:
                print(f"Job {args.job_id} not found", file=sys.stderr)
                return 1
            print(json.dumps(job.to_dict(), indent=2))
    finally:
        await conn.close()
    return 0


def main():
    parser = argparse.ArgumentParser(description="Delivery queue administration")
    parser.add_argument("--config", default=None, help="Path to settings YAML")
    parser.add_argument("--redis-url", default=None, help="Override redis.url from settings")
    sub = parser.add_subparsers(dest="command", required=True)

    stats = sub.add_parser("stats", help="Show queue counts")
    stats.add_argument("--json", action="store_true", help="Print as JSON")
    sub.add_parser("pause", help="Stop workers from claiming jobs")
    sub.add_parser("resume", help="Resume claiming")
    clear = sub.add_parser("clear", help="Remove every waiting and delayed job")
    clear.add_argument("--yes", action="store_true", help="Confirm the removal")
    sub.add_parser("recover", help="Requeue jobs whose lease expired")
    job = sub.add_parser("job", help="Show one job")
    job.add_argument("job_id")

    args = parser.parse_args()
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
