"""SearchRelay - streaming search relay

Simple CLI for running one streaming search and printing its events.
"""

import argparse
import asyncio
import sys

from searchrelay.errors import RelayError
from searchrelay.services.broadcast import BroadcastHub
from searchrelay.services.frames import parse_frame
from searchrelay.services.orchestrator import StreamOrchestrator
from searchrelay.services.session_store import MemorySessionStore
from searchrelay.services.upstream import UpstreamSessionClient


class ConsoleTransport:
    """Listener transport that prints each delivered event."""

    def __init__(self, raw: bool = False):
        self.raw = raw

    async def write(self, data: bytes) -> None:
        if self.raw:
            sys.stdout.write(data.decode("utf-8"))
            sys.stdout.flush()
            return

        frame = parse_frame(data)
        if frame is None:
            return
        event_type = frame.event
        payload = frame.data if isinstance(frame.data, dict) else {"content": frame.data}

        if event_type == "connected":
            print(f"[*] Listening on search {payload.get('searchId')}")

        elif event_type == "status":
            print(f"[~] {payload.get('status')}: {payload.get('message')}")

        elif event_type in ("THINKING", "INTERMEDIATE"):
            content = str(payload.get("content", ""))
            print(f"  [{frame.id}] {event_type}: {content[:200]}")

        elif event_type == "METADATA":
            print(f"  [i] metadata: {str(payload.get('content', ''))[:200]}")

        elif event_type == "REPORT":
            print(f"\n{'='*50}")
            print("REPORT:")
            print(f"{'='*50}")
            print(payload.get("content", ""))

        elif event_type == "complete":
            print(f"\n[*] Search Complete!")
            print(f"   Results: {payload.get('totalResults')}")
            print(f"   Duration: {payload.get('duration')}ms")

        elif event_type == "error":
            print(f"\n[!] Error ({payload.get('code')}): {payload.get('message', 'Unknown error')}")

    async def close(self) -> None:
        return None


async def run_search(query: str, token: str, user_id: str, raw: bool = False) -> int:
    """Run one streaming search and print its events."""
    print(f"Search query: {query}")
    print("-" * 50)

    store = MemorySessionStore()
    upstream = UpstreamSessionClient()
    hub = BroadcastHub()
    orchestrator = StreamOrchestrator(upstream, hub, store)

    try:
        try:
            result = await orchestrator.start(user_id, token, query)
        except RelayError as e:
            print(f"\n[!] Could not start search: {e}")
            return 1

        await orchestrator.attach_listener(result.session_id, user_id, ConsoleTransport(raw))
        await orchestrator.wait(result.session_id)

        session = await store.get_session(result.session_id)
        status = (session or {}).get("metadata", {}).get("status")
        return 0 if status == "COMPLETED" else 1
    finally:
        await orchestrator.shutdown()
        await hub.shutdown()
        await upstream.aclose()
        await store.close()


def main():
    parser = argparse.ArgumentParser(description="SearchRelay streaming search")
    parser.add_argument("--query", "-q", required=True, help="Search query")
    parser.add_argument("--token", "-t", required=True, help="Bearer token forwarded upstream")
    parser.add_argument("--user", "-u", default="cli", help="User id recorded as the search owner")
    parser.add_argument("--raw", action="store_true", help="Print raw event-stream frames")

    args = parser.parse_args()

    sys.exit(asyncio.run(run_search(args.query, args.token, args.user, args.raw)))


if __name__ == "__main__":
    main()
