"""Storyforge — dev launcher and prompt preview CLI."""

import argparse
import asyncio
import os
import signal
import subprocess
import sys
from pathlib import Path

from dotenv import load_dotenv

ROOT = Path(__file__).parent
load_dotenv(ROOT / ".env")

HOST = os.getenv("HOST", "0.0.0.0")
PORT = os.getenv("PORT", "8000")


def serve(args: argparse.Namespace) -> None:
    # Handle --demo: seed the demo story, then continue to the dev server
    if args.demo:
        from storyforge.demo import create_demo_data
        from storyforge.storage import JsonStoryStore
        create_demo_data(JsonStoryStore(args.data_dir or Path("data")))

    # Build env for the subprocess so the server reads the same data dir
    env = os.environ.copy()
    if args.data_dir:
        env["DATA_DIR"] = str(args.data_dir.resolve())

    print(f"Storyforge API on http://localhost:{PORT}/api ...")
    proc = subprocess.Popen(
        ["uv", "run", "uvicorn", "storyforge.app:app", "--reload",
         "--host", HOST, "--port", PORT],
        cwd=ROOT, env=env,
    )

    def shutdown(*_):
        print("\nShutting down...")
        proc.terminate()
        proc.wait()
        sys.exit(0)

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)
    proc.wait()


def preview(args: argparse.Namespace) -> None:
    from storyforge.models import ParserConfig
    from storyforge.prompts import PromptParser
    from storyforge.storage import JsonStoryStore

    store = JsonStoryStore(args.data_dir or Path(os.getenv("DATA_DIR", "data")))
    config = ParserConfig(
        prompt_id=args.prompt,
        story_id=args.story,
        chapter_id=args.chapter,
        scenebeat=args.scenebeat,
    )
    parsed = asyncio.run(PromptParser(store).parse_prompt(config))
    if parsed.error is not None:
        print(f"error: {parsed.error}", file=sys.stderr)
        sys.exit(1)
    for message in parsed.messages or []:
        print(f"--- {message.role} ---")
        print(message.content)


def main():
    parser = argparse.ArgumentParser(description="Storyforge dev launcher")
    parser.add_argument("--data-dir", type=Path, default=None,
                        help="Data storage directory (default: ./data)")
    parser.set_defaults(func=serve, demo=False)
    sub = parser.add_subparsers(dest="command")

    serve_parser = sub.add_parser("serve", help="Run the API server in watch mode")
    serve_parser.add_argument("--demo", action="store_true",
                              help="Recreate the demo story before starting")
    serve_parser.set_defaults(func=serve)

    preview_parser = sub.add_parser("preview", help="Print the messages a prompt renders to")
    preview_parser.add_argument("story", help="Story id")
    preview_parser.add_argument("--prompt", default="scene-beat", help="Prompt id")
    preview_parser.add_argument("--chapter", default=None, help="Chapter id")
    preview_parser.add_argument("--scenebeat", default=None, help="Scene beat text")
    preview_parser.set_defaults(func=preview)

    args = parser.parse_args()
    args.func(args)


if __name__ == "__main__":
    main()
