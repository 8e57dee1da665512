import json
import sys
import textwrap
from pathlib import Path

import pytest


# Ensure tests can import project packages regardless of how pytest is invoked.
ROOT = Path(__file__).resolve().parents[1]
ROOT_STR = str(ROOT)
if ROOT_STR not in sys.path:
    sys.path.insert(0, ROOT_STR)


M4A_HEADER = b"\x00\x00\x00\x18ftypM4A \x00\x00\x02\x00isomiso2"

_FAKE_YTDLP_SOURCE = textwrap.dedent(
    '''
    import json
    import sys
    import time

    plan_path = sys.argv[1]
    args = sys.argv[2:]
    with open(plan_path, "r", encoding="utf-8") as handle:
        plan = json.load(handle)

    if "--version" in args:
        print(plan.get("version", "2099.01.01"))
        sys.exit(0)

    client = "web"
    if "--extractor-args" in args:
        value = args[args.index("--extractor-args") + 1]
        client = value.split("player_client=", 1)[-1]
    output = args[args.index("-o") + 1] if "-o" in args else None

    with open(plan["log_path"], "a", encoding="utf-8") as log:
        log.write(json.dumps({"client": client, "output": output, "argv": args}) + "\\n")

    action = plan.get("clients", {}).get(client, plan.get("default", "fail"))
    with open(plan["payload_path"], "rb") as handle:
        payload = handle.read()


    def open_target():
        if output == "-":
            return sys.stdout.buffer
        return open(output.replace("%(ext)s", plan.get("ext", "m4a")), "wb")


    if action == "fail":
        sys.stderr.write("ERROR: Unable to extract player response\\n")
        sys.exit(1)
    if action == "block":
        sys.stderr.write("ERROR: [youtube] abc: Sign in to confirm you're not a bot\\n")
        sys.exit(1)
    if action == "sleep":
        time.sleep(plan.get("sleep_seconds", 30))
        sys.exit(0)
    if action == "empty":
        sys.exit(0)
    if action == "ok":
        target = open_target()
        for start in range(0, len(payload), 8192):
            target.write(payload[start:start + 8192])
        target.flush()
        if target is not sys.stdout.buffer:
            target.close()
        sys.exit(0)
    if action == "partial":
        target = open_target()
        target.write(payload[: len(payload) // 2])
        target.flush()
        sys.stderr.write("ERROR: fragment download failed\\n")
        sys.exit(1)
    if action == "stall":
        target = open_target()
        target.write(payload[:4096])
        target.flush()
        time.sleep(plan.get("sleep_seconds", 30))
        sys.exit(0)
    sys.stderr.write("ERROR: unknown plan action %s\\n" % action)
    sys.exit(2)
    '''
)


class FakeYtDlp:
    """Python stand-in for the yt-dlp executable, driven by a JSON plan file."""

    def __init__(self, directory: Path):
        self.directory = directory
        self.script = directory / "fake_ytdlp.py"
        self.plan_path = directory / "plan.json"
        self.log_path = directory / "calls.jsonl"
        self.payload_path = directory / "payload.bin"
        self.script.write_text(_FAKE_YTDLP_SOURCE, encoding="utf-8")
        self.command = [sys.executable, str(self.script), str(self.plan_path)]
        self.payload = b""
        self.configure()

    def configure(self, clients=None, *, default="fail", payload=None, ext="m4a", sleep_seconds=30):
        self.payload = payload if payload is not None else M4A_HEADER + bytes(range(256)) * 800
        self.payload_path.write_bytes(self.payload)
        plan = {
            "clients": clients or {},
            "default": default,
            "ext": ext,
            "sleep_seconds": sleep_seconds,
            "log_path": str(self.log_path),
            "payload_path": str(self.payload_path),
        }
        self.plan_path.write_text(json.dumps(plan), encoding="utf-8")
        return self

    def calls(self):
        if not self.log_path.exists():
            return []
        return [json.loads(line) for line in self.log_path.read_text(encoding="utf-8").splitlines() if line]

    def clients_called(self):
        return [call["client"] for call in self.calls()]


@pytest.fixture
def fake_ytdlp(tmp_path):
    directory = tmp_path / "bin"
    directory.mkdir()
    return FakeYtDlp(directory)


@pytest.fixture
def cache_root(tmp_path):
    root = tmp_path / "audio"
    root.mkdir()
    return root
