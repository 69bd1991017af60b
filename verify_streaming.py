#!/usr/bin/env python3
"""
Quick sanity check script to verify prices are being written and streamed.

Usage:
    python verify_streaming.py
    python verify_streaming.py --db data/market.db --ws ws://localhost:8080/ws --symbols BTC-USD

This script:
1. Checks if the database exists
2. Queries point counts per symbol
3. Shows the most recent points
4. Verifies timestamps are advancing (live polling is working)
5. Optionally subscribes over /ws and prints the first events received
"""

import argparse
import asyncio
import json
import sys
import time
from pathlib import Path

import aiosqlite
import websockets


async def verify_database(db_path: str = "data/market.db"):
    """Verify the database and show recent points."""

    db_file = Path(db_path)
    if not db_file.exists():
        print(f"❌ Database not found at: {db_path}")
        print("   → Make sure the core API has been started at least once.")
        return False

    print(f"✅ Database exists: {db_path}\n")

    async with aiosqlite.connect(db_path) as db:
        db.row_factory = aiosqlite.Row

        cursor = await db.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name='price_data'"
        )
        table = await cursor.fetchone()
        if not table:
            print("❌ 'price_data' table not found. Database may be corrupted.")
            return False

        print("✅ 'price_data' table exists\n")

        cursor = await db.execute("""
            SELECT symbol, COUNT(*) as count, MIN(timestamp) as oldest, MAX(timestamp) as newest
            FROM price_data
            GROUP BY symbol
            ORDER BY symbol
        """)
        rows = await cursor.fetchall()

        if not rows:
            print("⚠️  No price points in database yet.")
            print("   → Wait a few seconds after starting the core API for quotes to accumulate.")
            print("   → Check that the price source is configured in .env")
            return False

        print("📊 Point counts by symbol:")
        print("-" * 70)
        print(f"{'Symbol':<15} {'Count':>10} {'Oldest':<21} {'Newest':<21}")
        print("-" * 70)

        for row in rows:
            oldest = time.strftime('%Y-%m-%d %H:%M:%S', time.gmtime(row['oldest']))
            newest = time.strftime('%Y-%m-%d %H:%M:%S', time.gmtime(row['newest']))
            print(f"{row['symbol']:<15} {row['count']:>10,} {oldest:<21} {newest:<21}")

        print("-" * 70)
        print()

        cursor = await db.execute("""
            SELECT symbol, timestamp, price
            FROM price_data
            ORDER BY timestamp DESC
            LIMIT 10
        """)
        recent = await cursor.fetchall()

        print("🕐 Most recent points (last 10):")
        print("-" * 60)
        print(f"{'Symbol':<15} {'Timestamp':<20} {'Price':>15}")
        print("-" * 60)
        for point in recent:
            ts_str = time.strftime('%Y-%m-%d %H:%M:%S', time.gmtime(point['timestamp']))
            print(f"{point['symbol']:<15} {ts_str:<20} {point['price']:>15.5f}")
        print("-" * 60)
        print()

        latest_ts = recent[0]['timestamp']
        now = int(time.time())
        age_seconds = now - latest_ts
        age_minutes = age_seconds / 60.0

        print(f"⏱️  Latest point timestamp: {time.strftime('%Y-%m-%d %H:%M:%S UTC', time.gmtime(latest_ts))}")
        print(f"   Current time:          {time.strftime('%Y-%m-%d %H:%M:%S UTC', time.gmtime(now))}")
        print(f"   Age: {age_minutes:.1f} minutes ({age_seconds} seconds)\n")

        if age_minutes < 1:
            print("✅ Polling is ACTIVE! Points are recent (< 1 minute old)")
        elif age_minutes < 60:
            print(f"⚠️  Polling may be stalled. Latest point is {age_minutes:.1f} minutes old.")
            print("   → Check core API logs for rate limiting or network errors")
        else:
            print(f"❌ Polling appears STOPPED. Latest point is {age_minutes/60:.1f} hours old.")
            print("   → Restart the core API to resume polling")

        return True


async def verify_stream(ws_url: str, symbols: list[str], max_events: int = 5, timeout: float = 15.0):
    """Subscribe over the WebSocket endpoint and print the first events."""
    print(f"🔌 Connecting to {ws_url} ...")
    try:
        async with websockets.connect(ws_url) as ws:
            await ws.send(json.dumps({"type": "subscribe", "symbols": symbols}))
            received = 0
            deadline = time.monotonic() + timeout
            while received < max_events:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                raw = await asyncio.wait_for(ws.recv(), timeout=remaining)
                msg = json.loads(raw)
                received += 1
                kind = msg.get("type")
                if kind == "historical":
                    print(f"   📜 historical {msg.get('symbol')}: {len(msg.get('data', []))} points")
                elif kind == "price":
                    print(f"   💹 price {msg.get('symbol')} {msg.get('price')} @ {msg.get('timestamp')}")
                else:
                    print(f"   ✉️  {kind}: {msg}")
    except asyncio.TimeoutError:
        pass
    except (OSError, websockets.exceptions.WebSocketException) as e:
        print(f"❌ WebSocket check failed: {e}")
        return False

    if received == 0:
        print("⚠️  No stream events received.")
        return False
    print(f"✅ Received {received} stream event(s)")
    return True


def parse_args():
    parser = argparse.ArgumentParser(description="Market Feed - Streaming Verification")
    parser.add_argument("--db", default="data/market.db", help="SQLite database path")
    parser.add_argument("--ws", default=None, help="WebSocket URL, e.g. ws://localhost:8080/ws")
    parser.add_argument("--symbols", default="BTC-USD", help="Comma-separated symbols to subscribe")
    return parser.parse_args()


async def main():
    """Main entry point."""
    args = parse_args()

    print("=" * 60)
    print("Market Feed - Streaming Verification")
    print("=" * 60)
    print()

    success = await verify_database(args.db)

    if args.ws:
        print()
        symbols = [s.strip().upper() for s in args.symbols.split(",") if s.strip()]
        success = await verify_stream(args.ws, symbols) and success

    print()
    print("=" * 60)

    if success:
        print("✅ Verification complete!")
    else:
        print("⚠️  Issues found. See messages above.")

    sys.exit(0 if success else 1)


if __name__ == "__main__":
    asyncio.run(main())
