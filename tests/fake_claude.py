"""Stand-in for the agent CLI used by the runner tests.

Speaks the same ``stream-json`` dialect as the real CLI. With
``--input-format stream-json`` it stays alive and answers one NDJSON user
message per turn; otherwise it reads a single prompt from stdin, answers it and
exits. The message text selects the behavior:

- ``crash``      write "boom" to stderr and exit with code 3
- ``crash loud`` write over 1000 chars of stderr ending in a fatal line, exit 3
- ``hang``       ignore SIGTERM, say "hanging" and never finish the turn
- ``slow``       never answer (default SIGTERM handling)
- ``flood N``    emit N assistant text blocks before the result
- ``tool``       emit a tool_use and a 300-line tool_result
- ``exit``       answer, then exit 0 without waiting for more input
- anything else  echo the text back
"""

import json
import signal
import sys
import time
import uuid


def emit(payload):
    sys.stdout.write(json.dumps(payload) + "\n")
    sys.stdout.flush()


def answer(text, session_id, resumed_from=None):
    command = text.strip()

    if command == "crash":
        sys.stderr.write("boom\n")
        sys.stderr.flush()
        sys.exit(3)

    if command == "crash loud":
        for i in range(100):
            sys.stderr.write(f"warning {i:03d}: retrying request\n")
        sys.stderr.write("fatal: out of tokens\n")
        sys.stderr.flush()
        sys.exit(3)

    if command == "hang":
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
        emit({"type": "assistant", "message": {"content": [{"type": "text", "text": "hanging"}]}})
        while True:
            time.sleep(1)

    if command == "slow":
        while True:
            time.sleep(1)

    if command.startswith("flood"):
        count = int(command.split()[1]) if len(command.split()) > 1 else 100
        for i in range(count):
            emit({
                "type": "assistant",
                "message": {"content": [{"type": "text", "text": f"line {i}"}]},
            })

    elif command == "tool":
        emit({
            "type": "assistant",
            "message": {"content": [
                {"type": "tool_use", "name": "Bash", "input": {"command": "seq 300"}},
            ]},
        })
        emit({
            "type": "tool_result",
            "content": "\n".join(str(i) for i in range(300)),
        })

    else:
        reply = f"echo: {command}"
        if resumed_from:
            reply += f" (resumed {resumed_from})"
        emit({"type": "content_block_start", "index": 0, "content_block": {"type": "text"}})
        emit({
            "type": "content_block_delta",
            "index": 0,
            "delta": {"type": "text_delta", "text": reply},
        })
        emit({"type": "content_block_stop", "index": 0})
        emit({
            "type": "assistant",
            "message": {"content": [{"type": "text", "text": reply}]},
        })

    emit({
        "type": "result",
        "session_id": session_id,
        "duration_ms": 65000,
        "cost_usd": 0.12,
    })

    if command == "exit":
        sys.exit(0)


def main(argv):
    resumed_from = None
    if "--resume" in argv:
        resumed_from = argv[argv.index("--resume") + 1]
    session_id = resumed_from or f"fake-{uuid.uuid4()}"

    emit({"type": "system", "subtype": "init", "session_id": session_id})

    if "--input-format" in argv:
        while True:
            line = sys.stdin.readline()
            if not line:
                return 0
            if not line.strip():
                continue
            message = json.loads(line)
            answer(message["message"]["content"], session_id)

    answer(sys.stdin.read(), session_id, resumed_from)
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
