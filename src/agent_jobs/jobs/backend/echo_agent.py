"""Deterministic local agent mimicking the assistant CLI for integration tests.

The prompt selects the behavior:

- ``sleep:<seconds>:<text>`` waits before answering ``<text>``.
- ``fail:<message>`` reports a failed result (stderr + exit code 1).
- ``exit:<code>`` exits with ``<code>`` without printing a result.
- ``rate-limit`` emits a throttling notice before answering.
- anything else is echoed back as the answer.
"""

from __future__ import annotations

import argparse
import json
import sys
import time


def main(argv: list[str] | None = None) -> int:
    """Answer the prompt in text or stream-json format."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--print", dest="print_mode", action="store_true")
    parser.add_argument("--output-format", default="text", choices=["text", "stream-json"])
    parser.add_argument("--verbose", action="store_true")
    parser.add_argument("--model", default=None)
    parser.add_argument("--allowed-tools", default=None)
    parser.add_argument("--no-session-persistence", action="store_true")
    parser.add_argument("--dangerously-skip-permissions", action="store_true")
    parser.add_argument("prompt")
    args = parser.parse_args(argv)

    stream = args.output_format == "stream-json"
    prompt: str = args.prompt

    if prompt.startswith("sleep:"):
        _, seconds, prompt = prompt.split(":", 2)
        if stream:
            _emit({"type": "system", "subtype": "init", "model": args.model})
            _emit_tool("Bash")
        time.sleep(float(seconds))

    if prompt.startswith("exit:"):
        print(f"echo agent exiting with {prompt[5:]}", file=sys.stderr)
        return int(prompt[5:])

    if prompt.startswith("fail:"):
        message = prompt[5:]
        print(message, file=sys.stderr)
        if stream:
            _emit(
                {
                    "type": "result",
                    "subtype": "error_during_execution",
                    "is_error": True,
                    "errors": [message],
                    "duration_ms": 5,
                    "num_turns": 1,
                },
            )
        return 1

    if prompt == "rate-limit":
        if stream:
            _emit({"type": "assistant", "error": "rate_limit", "message": {"content": []}})
        else:
            print("429 rate limit, retrying", file=sys.stderr)

    return _answer(prompt, stream=stream)


def _answer(text: str, *, stream: bool) -> int:
    if not stream:
        sys.stdout.write(text)
        sys.stdout.flush()
        return 0

    _emit({"type": "assistant", "message": {"content": [{"type": "text", "text": text}]}})
    _emit(
        {
            "type": "result",
            "subtype": "success",
            "is_error": False,
            "result": text,
            "total_cost_usd": 0.0,
            "duration_ms": 5,
            "num_turns": 1,
            "usage": {"input_tokens": len(text.split()), "output_tokens": len(text.split())},
        },
    )
    return 0


def _emit_tool(name: str) -> None:
    _emit({"type": "assistant", "message": {"content": [{"type": "tool_use", "name": name}]}})


def _emit(payload: dict[str, object]) -> None:
    sys.stdout.write(json.dumps(payload) + "\n")
    sys.stdout.flush()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
