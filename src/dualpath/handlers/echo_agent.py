"""Local deterministic agent for CLI handler and model router tests."""

from __future__ import annotations

import argparse
import json
import sys
import time

from dualpath.assistant.routing import heuristic_route


def main(argv: list[str] | None = None) -> int:
    """Answer a prompt, or with ``--route`` print a routing decision."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt", required=True)
    parser.add_argument("--agent", default="personality")
    parser.add_argument("--user-name", default="")
    parser.add_argument("--route", action="store_true")
    parser.add_argument("--confidence", type=float, default=None)
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--exit-code", type=int, default=0)
    args, _ = parser.parse_known_args(argv)

    if args.sleep > 0:
        time.sleep(args.sleep)
    if args.exit_code != 0:
        sys.stderr.write(f"echo agent failure for: {args.prompt}\n")
        return args.exit_code

    if args.route:
        decision = heuristic_route(args.prompt)
        payload: dict[str, object] = {
            "agent": decision.agent,
            "confidence": args.confidence if args.confidence is not None else decision.confidence,
            "rationale": f"echo router: {decision.rationale}",
        }
    else:
        greeting = f"{args.user_name}, " if args.user_name else ""
        payload = {
            "content": f"{greeting}[{args.agent}] {args.prompt.strip()}",
            "metadata": {"backend": "echo_agent"},
        }
    sys.stdout.write(json.dumps(payload, ensure_ascii=False))
    sys.stdout.write("\n")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
