"""
Storymap Player CLI - play a storymap timeline headlessly.

Entry point:
    storymap-play   - play a timeline from a JSON file or the REST API
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

from .config import get_settings
from .logging_config import configure_logging
from .timeline.data_store import HttpTimelineStore, JsonTimelineStore
from .timeline.exceptions import DataFetchFailure
from .timeline.playback_controller import PlaybackController
from .timeline.render_gateway import LoggingRenderGateway
from .timeline.segment_sequencer import PlaybackState

logger = logging.getLogger(__name__)


def validate_port(value: str) -> int:
    """Validate port number is in valid range."""
    try:
        port = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid port number: {value}")

    if not 1 <= port <= 65535:
        raise argparse.ArgumentTypeError(f"Port must be between 1 and 65535, got: {port}")
    return port


def validate_index(value: str) -> int:
    try:
        index = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid segment index: {value}")
    if index < 0:
        raise argparse.ArgumentTypeError(f"Segment index must be >= 0, got: {index}")
    return index


def build_parser() -> argparse.ArgumentParser:
    settings = get_settings()
    parser = argparse.ArgumentParser(
        prog="storymap-play",
        description="Storymap Player - headless timeline playback",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  storymap-play story.json                          # Play a timeline file
  storymap-play story.json --from-index 3           # Start at the fourth segment
  storymap-play story.json --segment seg-2          # Play one segment only
  storymap-play --api-url https://api.example.com --timeline-id abc --broadcast
        """,
    )

    parser.add_argument("file", nargs="?", help="Timeline JSON document")
    parser.add_argument(
        "--api-url",
        default=settings.api_base_url,
        help="Storymap REST API root (default: $STORYMAP_API_BASE_URL)",
    )
    parser.add_argument("--timeline-id", help="Timeline (storymap) id")
    parser.add_argument(
        "--from-index",
        type=validate_index,
        default=0,
        help="Segment index to start from (default: 0)",
    )
    parser.add_argument("--segment", help="Play only this segment id, then exit")
    parser.add_argument(
        "--routes-only",
        action="store_true",
        help="With --segment: run the segment's routes without camera moves",
    )
    parser.add_argument(
        "--auto-continue",
        action="store_true",
        help="Continue past user-action gates automatically",
    )
    parser.add_argument(
        "--broadcast",
        action="store_true",
        help="Serve playback status over WebSocket and keep running after playback",
    )
    parser.add_argument(
        "--broadcast-port",
        type=validate_port,
        default=settings.broadcast_port,
        help=f"WebSocket port for status clients (default: {settings.broadcast_port})",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging level (default: INFO)",
    )
    return parser


async def _auto_continue(controller: PlaybackController, interval_s: float = 0.25):
    while True:
        if controller.sequencer.state == PlaybackState.WAITING_FOR_USER_ACTION:
            logger.info("Auto-continuing past user-action gate")
            controller.continue_after_user_action()
        await asyncio.sleep(interval_s)


async def run_player(args: argparse.Namespace) -> int:
    settings = get_settings()

    if args.file:
        store = JsonTimelineStore(args.file)
        try:
            timeline_id = args.timeline_id or store.timeline_id
        except DataFetchFailure as e:
            logger.error(str(e))
            return 1
    else:
        store = HttpTimelineStore(args.api_url, settings.api_token, settings.request_timeout_s)
        timeline_id = args.timeline_id

    controller = PlaybackController(LoggingRenderGateway(), store, settings)
    broadcaster = None
    helper_task = None
    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()

    def signal_handler(sig, frame):
        loop.call_soon_threadsafe(stop_requested.set)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        count = await controller.load(timeline_id)
        if count == 0:
            logger.error(f"Timeline {timeline_id} has no segments")
            return 1

        if args.broadcast:
            from .broadcast import StatusBroadcaster

            broadcaster = StatusBroadcaster(controller, settings.broadcast_host, args.broadcast_port)
            await broadcaster.start()

        if args.segment:
            if args.routes_only:
                started = controller.play_route_animation_only(args.segment)
            else:
                started = controller.play_single_segment(args.segment)
        else:
            started = controller.play_from_index(args.from_index)
        if not started:
            return 1

        if args.auto_continue:
            helper_task = asyncio.create_task(_auto_continue(controller))

        idle = asyncio.create_task(controller.wait_until_idle())
        stopper = asyncio.create_task(stop_requested.wait())
        await asyncio.wait({idle, stopper}, return_when=asyncio.FIRST_COMPLETED)
        idle.cancel()

        if broadcaster is not None and not stop_requested.is_set():
            logger.info("Playback finished, still serving status (Ctrl+C to exit)")
            await stop_requested.wait()
        stopper.cancel()
        return 0
    finally:
        if helper_task is not None:
            helper_task.cancel()
        await controller.close()
        if broadcaster is not None:
            await broadcaster.stop()
        await store.aclose()


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.file and not (args.api_url and args.timeline_id):
        parser.error("give a timeline file, or --api-url with --timeline-id")
    if args.routes_only and not args.segment:
        parser.error("--routes-only needs --segment")

    configure_logging(getattr(logging, args.log_level))

    try:
        return asyncio.run(run_player(args))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
