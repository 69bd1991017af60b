"""
One-command bootstrap launcher for the market feed.

Backfills price history for the requested symbols, then starts the API
(poller, relay, REST and /ws) and keeps it running until Ctrl+C.

Usage:
    python -m marketfeed.bootstrap.run_all
    python -m marketfeed.bootstrap.run_all --symbols BTC-USD,SOL-USD --api_port 9000
    python -m marketfeed.bootstrap.run_all --skip_backfill --no_poller
"""

import argparse
import asyncio
import os
import signal
import subprocess
import sys
import time
import urllib.error
import urllib.request
from pathlib import Path

from marketfeed.backfill.history import BackfillReport, HistoryBackfiller
from marketfeed.config import get_settings
from marketfeed.providers.http_history import HTTPHistorySource
from marketfeed.storage.sqlite import TimeSeriesStore
from marketfeed.streaming.rate_limiter import TokenBucketRateLimiter


def parse_args(argv=None):
    """Parse command-line arguments."""
    settings = get_settings()
    parser = argparse.ArgumentParser(
        description="Market Feed - One Command Bootstrap",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m marketfeed.bootstrap.run_all
  python -m marketfeed.bootstrap.run_all --symbols BTC-USD,ETH-USD,SOL-USD
  python -m marketfeed.bootstrap.run_all --skip_backfill --api_port 9000
        """
    )

    # Database
    parser.add_argument(
        "--db",
        default=settings.sqlite_path,
        help=f"SQLite database path (default: {settings.sqlite_path})"
    )

    # Backfill settings
    parser.add_argument(
        "--symbols",
        default=settings.default_symbols,
        help=f"Comma-separated symbols to backfill and poll (default: {settings.default_symbols})"
    )
    parser.add_argument(
        "--history_url",
        default=settings.history_source_url,
        help="Base URL of the historical price source"
    )
    parser.add_argument(
        "--skip_backfill",
        action="store_true",
        help="Skip the historical backfill step"
    )

    # Server
    parser.add_argument(
        "--api_port",
        type=int,
        default=settings.port,
        help=f"FastAPI port (default: {settings.port})"
    )
    parser.add_argument(
        "--no_poller",
        action="store_true",
        help="Start the API without live quote polling"
    )

    return parser.parse_args(argv)


def parse_symbols(raw: str) -> list[str]:
    out: list[str] = []
    for s in raw.split(","):
        value = s.strip().upper()
        if value and value not in out:
            out.append(value)
    return out


async def run_backfill(args, settings) -> BackfillReport | None:
    """
    Backfill every requested symbol into the store.

    Symbols with data resume from their latest timestamp, empty ones get
    full history. Failures are reported per symbol and never abort startup.

    Returns:
        BackfillReport, or None when skipped
    """
    if args.skip_backfill:
        print("⏩ Skipping backfill (--skip_backfill)")
        return None

    symbols = parse_symbols(args.symbols)
    if not symbols:
        print("⏩ No symbols to backfill")
        return None

    store = TimeSeriesStore(args.db, busy_timeout_ms=settings.sqlite_busy_timeout_ms)
    await store.init()

    backfiller = HistoryBackfiller(
        source=HTTPHistorySource(args.history_url),
        store=store,
        limiter=TokenBucketRateLimiter(
            capacity=settings.history_rate_limit_capacity,
            refill_interval=settings.history_rate_limit_refill_seconds,
        ),
    )

    print(f"\n🔄 Backfilling {len(symbols)} symbol(s): {', '.join(symbols)}")
    report = await backfiller.backfill(symbols, progress_cb=lambda msg: print(f"  {msg}"))

    print(
        f"\n✅ Backfill complete: {report.total_written} points in "
        f"{report.duration_seconds:.1f}s"
    )
    if report.failed:
        print(f"⚠️  {len(report.failed)} symbol(s) failed: {', '.join(sorted(report.failed))}")
        print("   Continuing anyway (live polling will populate data)...")
    return report


def start_backend(args):
    """
    Start FastAPI backend as subprocess.

    Returns:
        subprocess.Popen: Backend process
    """
    print(f"\n🚀 Starting backend API on port {args.api_port}...")

    env = os.environ.copy()
    env["SQLITE_PATH"] = args.db
    env["DEFAULT_SYMBOLS"] = args.symbols
    if args.no_poller:
        env["POLLER_ENABLED"] = "false"
        print("   ⚙️  Live polling disabled (--no_poller)")

    cmd = [
        sys.executable,
        "-m",
        "uvicorn",
        "marketfeed.main:app",
        "--host",
        "127.0.0.1",
        "--port",
        str(args.api_port),
    ]

    # Use CREATE_NEW_PROCESS_GROUP on Windows for clean shutdown
    kwargs = {
        "env": env,
        "cwd": str(Path(__file__).parent.parent.parent),
    }

    if sys.platform == "win32":
        kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP

    process = subprocess.Popen(cmd, **kwargs)

    print(f"   PID: {process.pid}")
    return process


def wait_for_backend(api_port: int, max_retries: int = 20, delay: float = 1.0) -> bool:
    """
    Wait for backend to be ready.

    Returns:
        bool: True if backend is ready, False if timeout
    """
    print("\n⏳ Waiting for backend to be ready...")

    for i in range(max_retries):
        try:
            url = f"http://localhost:{api_port}/health"
            response = urllib.request.urlopen(url, timeout=2)
            if response.status == 200:
                print(f"✓ Backend ready after {i + 1} attempts")
                return True
        except (urllib.error.URLError, OSError):
            pass

        if i < max_retries - 1:
            time.sleep(delay)

    print(f"✗ Backend not ready after {max_retries} attempts")
    return False


def cleanup_process(backend_process):
    """Terminate the backend cleanly."""
    print("\n\n🛑 Shutting down...")

    if backend_process and backend_process.poll() is None:
        print("   Stopping backend...")
        try:
            if sys.platform == "win32":
                backend_process.send_signal(signal.CTRL_BREAK_EVENT)
            else:
                backend_process.terminate()
            backend_process.wait(timeout=5)
        except (OSError, subprocess.TimeoutExpired) as e:
            print(f"   Force killing backend: {e}")
            backend_process.kill()

    print("✓ Shutdown complete")


def main(argv=None):
    """Main bootstrap entry point."""
    args = parse_args(argv)
    settings = get_settings()

    print("=" * 60)
    print("🚀 MARKET FEED - ONE COMMAND BOOTSTRAP")
    print("=" * 60)
    print()

    Path(args.db).parent.mkdir(parents=True, exist_ok=True)
    backend_process = None

    try:
        # Step 1: Backfill
        asyncio.run(run_backfill(args, settings))

        # Step 2: Start backend
        backend_process = start_backend(args)

        # Step 3: Wait for backend
        if not wait_for_backend(args.api_port):
            print("\n✗ Backend failed to start. Check logs above.")
            return 1

        # Step 4: Success message
        print("\n" + "=" * 60)
        print("✅ MARKET FEED IS RUNNING")
        print("=" * 60)
        print(f"\n🔗 API:     http://localhost:{args.api_port}")
        print(f"🔗 Docs:    http://localhost:{args.api_port}/docs")
        print(f"🔗 Stream:  ws://localhost:{args.api_port}/ws")
        print("\n⌨️  Press CTRL+C to stop")
        print("=" * 60)
        print()

        # Step 5: Wait for Ctrl+C
        while True:
            time.sleep(1)

            if backend_process.poll() is not None:
                print("\n✗ Backend process died unexpectedly")
                break

    except KeyboardInterrupt:
        print("\n\n⌨️  Received Ctrl+C")

    finally:
        cleanup_process(backend_process)

    return 0


if __name__ == "__main__":
    sys.exit(main())
