"""Azeroth Chronicles launcher.

    python main.py serve              run the turn server (uvicorn)
    python main.py play               play in the terminal against a running server
"""

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

ROOT = Path(__file__).parent
load_dotenv(ROOT / ".env")

HOST = os.getenv("HOST", "0.0.0.0")
PORT = os.getenv("PORT", "13013")

logger = logging.getLogger("chronicles")


def serve(args: argparse.Namespace) -> None:
    import uvicorn

    uvicorn.run("backend.app:app", host=args.host, port=int(args.port), reload=args.reload)


class TerminalSpeaker:
    """Speech stand-in for the terminal: reports what would be spoken."""

    def speak(self, utterance) -> None:
        logger.debug("speech rate=%.2f pitch=%.2f", utterance.rate, utterance.pitch)

    def cancel(self) -> None:
        pass


async def play(args: argparse.Namespace) -> None:
    import httpx

    from chronicles.models import CharacterState
    from chronicles.presentation import Presenter
    from chronicles.session import GameSession
    from chronicles.storage import Storage

    storage = Storage(args.data_dir)
    ui = storage.load_settings().ui

    def echo(text: str) -> None:
        sys.stdout.write("\r" + text.replace("\n", " ")[-200:])
        sys.stdout.flush()

    presenter = Presenter.from_ui(ui, speaker=TerminalSpeaker(), on_change=echo)
    async with httpx.AsyncClient(base_url=args.server, timeout=None) as client:
        session = GameSession(storage, client, presenter=presenter)
        if not session.progress.game_started:
            session.begin(
                args.scenario,
                CharacterState(name=args.name, class_name=args.class_name),
                [],
            )
        for entry in session.narrative[-5:]:
            print(entry.content)

        while True:
            for i, choice in enumerate(session.action_choices, 1):
                print(f"  {i}. {choice.text}")
            try:
                action = input("\n> ").strip()
            except EOFError:
                break
            if action in {"quit", "exit"}:
                break
            if action.isdigit() and 0 < int(action) <= len(session.action_choices):
                action = session.action_choices[int(action) - 1].text
            if not action:
                continue

            await session.take_turn(action)
            await presenter.wait()
            print()
            if session.current_response and session.current_response.type == "system":
                print(session.current_response.content)
            c = session.character
            print(f"[{c.name} HP {c.hp}/{c.max_hp} @ {c.location}]")

        session.leave()
        await session.drain()


def main():
    parser = argparse.ArgumentParser(description="Azeroth Chronicles launcher")
    sub = parser.add_subparsers(dest="command", required=True)

    p_serve = sub.add_parser("serve", help="Run the turn server")
    p_serve.add_argument("--host", default=HOST)
    p_serve.add_argument("--port", default=PORT)
    p_serve.add_argument("--reload", action="store_true", help="Reload on code changes")

    p_play = sub.add_parser("play", help="Play in the terminal")
    p_play.add_argument("--server", default=f"http://localhost:{PORT}")
    p_play.add_argument("--data-dir", type=Path, default=ROOT / "data",
                        help="Save directory (default: ./data)")
    p_play.add_argument("--scenario", default="The Third War")
    p_play.add_argument("--name", default="Adventurer")
    p_play.add_argument("--class-name", default="Warrior")

    args = parser.parse_args()
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "serve":
        serve(args)
    else:
        asyncio.run(play(args))


if __name__ == "__main__":
    main()
