"""Ordered yt-dlp invocation strategies and failure classification."""

from __future__ import annotations

import os
from dataclasses import dataclass, replace

from config.settings import STRATEGY_TIMEOUT_MS
from engine.errors import AntiBotBlock, EmptyOutput, ExtractionError, StrategyFailed, StrategyTimeout

WATCH_URL = "https://www.youtube.com/watch?v={source_id}"

# Matched against lower-cased stderr.
_BLOCK_SIGNATURES = (
    "sign in to confirm",
    "confirm you're not a bot",
    "confirm you are not a bot",
    "age-restricted",
    "age restricted",
    "inappropriate for some users",
    "login required",
    "access denied",
    "http error 403",
    "forbidden",
)

_STDERR_TAIL_CHARS = 2000


@dataclass(frozen=True)
class ExtractionStrategy:
    name: str
    identity_args: tuple[str, ...]
    format_selector: str
    outputs_to_stdout: bool = False
    timeout_ms: int = STRATEGY_TIMEOUT_MS

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0

    def streaming(self) -> "ExtractionStrategy":
        return replace(self, outputs_to_stdout=True)


# Order is policy: the most permissive client identity goes first. Changing it
# changes real-world success rates.
DEFAULT_STRATEGIES: tuple[ExtractionStrategy, ...] = (
    ExtractionStrategy(
        name="android",
        identity_args=("--extractor-args", "youtube:player_client=android"),
        format_selector="bestaudio[ext=m4a]/18/bestaudio",
    ),
    ExtractionStrategy(
        name="ios",
        identity_args=("--extractor-args", "youtube:player_client=ios"),
        format_selector="bestaudio[ext=m4a]/bestaudio",
    ),
    ExtractionStrategy(
        name="web",
        identity_args=(),
        format_selector="bestaudio/best",
    ),
)


def resolve_ytdlp_command() -> list[str]:
    """Argv prefix for the yt-dlp executable; ``YT_DLP_PATH`` wins over PATH."""
    override = (os.environ.get("YT_DLP_PATH") or "").strip()
    if override and os.path.exists(override):
        return [override]
    return ["yt-dlp"]


def build_strategy_argv(
    ytdlp_command: list[str] | tuple[str, ...],
    strategy: ExtractionStrategy,
    source_id: str,
    output_target: str,
) -> list[str]:
    """Build the argv for one attempt. Never joined into a shell string."""
    args = list(ytdlp_command)
    args.append(WATCH_URL.format(source_id=source_id))
    args.extend(strategy.identity_args)
    args += ["-f", strategy.format_selector]
    args += ["-o", "-" if strategy.outputs_to_stdout else output_target]
    args += ["--no-playlist", "--no-warnings", "--no-progress", "--force-ipv4"]
    return args


def is_block_signature(stderr_text: str | None) -> bool:
    if not stderr_text:
        return False
    lowered = stderr_text.lower()
    return any(signature in lowered for signature in _BLOCK_SIGNATURES)


def stderr_tail(stderr_text: str | None) -> str:
    text = (stderr_text or "").strip()
    return text[-_STDERR_TAIL_CHARS:]


def classify_failure(
    strategy: ExtractionStrategy,
    *,
    returncode: int | None,
    stderr_text: str | None,
    timed_out: bool,
) -> ExtractionError:
    """Map an attempt that produced no payload onto the failure taxonomy."""
    tail = stderr_tail(stderr_text)
    if timed_out:
        return StrategyTimeout(
            f"{strategy.name}: timed out after {strategy.timeout_seconds:g}s",
            strategy=strategy.name,
            stderr=tail,
        )
    if is_block_signature(tail):
        return AntiBotBlock(f"{strategy.name}: platform refused this client", strategy=strategy.name, stderr=tail)
    if returncode == 0:
        return EmptyOutput(f"{strategy.name}: exited cleanly without audio", strategy=strategy.name, stderr=tail)
    last_line = tail.splitlines()[-1] if tail else ""
    return StrategyFailed(
        f"{strategy.name}: yt-dlp exited with code {returncode}" + (f" ({last_line})" if last_line else ""),
        strategy=strategy.name,
        stderr=tail,
    )
