"""StorySync — launcher. Runs the relay, or a console peer attached to one."""

import argparse
import asyncio
import logging
import sys

import uvicorn

from storysync.config import load_settings
from storysync.game import Game, NotAuthorized
from storysync.llm import EchoLLM, build_llm
from storysync.models import new_id
from storysync.saves import SaveSlots
from storysync.transport import HttpTransport, TransportError

HELP = (
    "Type a command to act. /text chats. "
    "/save, /load SLOT (or /load to list saves), /bots N, /who, /quit."
)


def render_roster(game: Game) -> None:
    for p in game.roster():
        kind = "[AI]" if p.is_automated else "[HUMAN]"
        host = " (Host)" if p.is_host else ""
        print(f"  {kind} {p.display_name}{host}")
    print(f"  Inventory: {', '.join(game.inventory()) or '(empty)'}")


async def handle_line(game: Game, line: str) -> bool:
    """Run one console line. Returns False to quit."""
    if not line.startswith("/"):
        await game.send_command(line)
        return True

    word, _, rest = line[1:].partition(" ")
    if word == "quit":
        return False
    if word == "who":
        render_roster(game)
    elif word == "save":
        game.save_game()
    elif word == "load":
        if rest.strip():
            await game.load_game(rest.strip())
        elif game.saves is not None:
            print(f"  Saved slots: {', '.join(game.saves.occupied()) or '(none)'}")
    elif word == "bots":
        await game.add_bots(int(rest.strip() or "1"))
    elif word == "help":
        print(HELP)
    else:
        await game.send_chat(line[1:])
    return True


async def play(args: argparse.Namespace) -> None:
    settings = load_settings()
    identity = args.identity or new_id()
    transport = HttpTransport(args.relay, identity, settings.max_payload_bytes)
    await transport.join(args.group)

    game = Game(
        identity=identity,
        display_name=args.name,
        is_host=args.host,
        llm=EchoLLM() if args.echo else build_llm(settings),
        transport=transport,
        saves=SaveSlots(settings.data_dir, settings.slots),
        settings=settings,
    )
    game.events.on_log(print)
    pump = game.pump()
    pump.start()

    print(f"Group {args.group} as {args.name} ({'Host' if args.host else 'Client'}). {HELP}")
    try:
        if args.host:
            await game.new_game(args.slot, add_bots=args.bots > 0, bot_count=args.bots)
        while True:
            line = (await asyncio.to_thread(input, "> ")).strip()
            if not line:
                continue
            try:
                if not await handle_line(game, line):
                    break
            except (NotAuthorized, ValueError) as e:
                print(f"[INFO] {e}")
    except (EOFError, KeyboardInterrupt):
        pass
    finally:
        await pump.stop()
        if game.engine is not None:
            await game.engine.wait_idle()
        try:
            await transport.leave()
        except TransportError as e:
            logging.getLogger(__name__).warning("leave failed: %s", e)
        await transport.aclose()


def main():
    parser = argparse.ArgumentParser(description="StorySync launcher")
    sub = parser.add_subparsers(dest="command", required=True)

    relay = sub.add_parser("relay", help="Run the group relay service")
    relay.add_argument("--host", default="0.0.0.0")
    relay.add_argument("--port", type=int, default=13015)

    peer = sub.add_parser("play", help="Join a group as a console peer")
    peer.add_argument("--relay", default="http://localhost:13015", help="Relay base URL")
    peer.add_argument("--group", required=True, help="Group id to join")
    peer.add_argument("--name", default="Player", help="Display name")
    peer.add_argument("--identity", default="", help="Stable identity (default: random)")
    peer.add_argument("--host", action="store_true", help="Act as the session host")
    peer.add_argument("--bots", type=int, default=1, help="AI companions for a new world")
    peer.add_argument("--slot", default="SlotA", help="Save slot for a new world")
    peer.add_argument("--echo", action="store_true",
                      help="Echo prompts instead of calling a narration backend")
    args = parser.parse_args()

    settings = load_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    if args.command == "relay":
        print(f"Starting relay on http://localhost:{args.port} ...")
        uvicorn.run("storysync.relay:app", host=args.host, port=args.port)
        return

    asyncio.run(play(args))


if __name__ == "__main__":
    main()
