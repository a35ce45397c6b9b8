from __future__ import annotations

import json
import logging
import os
import re
import shlex
import subprocess
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Sequence, Tuple

from batchbrake.cancellation import CancelSignal
from batchbrake.converter import ConversionResult, Converter, ProgressCallback
from batchbrake.errors import ConversionCancelledError, ConversionFailedError
from batchbrake.utils import create_process, kill_process, terminate_process

logger = logging.getLogger(__name__)

_PROGRESS_RE = re.compile(r"Encoding: task (\d+) of (\d+), (\d+(?:\.\d+)?) %")


def parse_progress(line: str) -> Optional[float]:
    """Return overall percent for a HandBrakeCLI progress line, else ``None``.

    Multi-pass encodes report each task from 0 to 100; the tasks are weighted
    equally so the result keeps growing across passes.
    """
    match = _PROGRESS_RE.search(line)
    if not match:
        return None
    task = int(match.group(1))
    total = max(int(match.group(2)), 1)
    percent = float(match.group(3))
    task = min(max(task, 1), total)
    return ((task - 1) + percent / 100.0) / total * 100.0


def parse_preset_list(output: str) -> Dict[str, List[str]]:
    presets: Dict[str, List[str]] = {}
    category: Optional[str] = None
    for line in output.splitlines():
        trimmed = line.strip()
        if not trimmed:
            continue
        if trimmed.endswith("/"):
            category = trimmed.rstrip("/")
            presets[category] = []
            continue
        if category is None or trimmed.startswith("[") or trimmed.startswith("HandBrake"):
            continue
        # names are indented one level, descriptions two
        if line.startswith("   ") and not line.startswith("     "):
            presets[category].append(trimmed)
    return presets


def read_preset_file(path: str) -> List[str]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            payload = json.load(handle)
    except (OSError, ValueError) as exc:
        logger.warning("Could not read preset file %s: %s", path, exc)
        return []
    names: List[str] = []
    entries = payload.get("PresetList") if isinstance(payload, dict) else None
    for entry in entries or []:
        if not isinstance(entry, dict):
            continue
        name = str(entry.get("PresetName") or "").strip()
        if name and name not in names:
            names.append(name)
    return names


@dataclass(frozen=True)
class HandBrakeConfig:
    cli_path: str = "HandBrakeCLI"
    preset_files: Tuple[str, ...] = field(default_factory=tuple)
    additional_arguments: str = ""
    kill_timeout: float = 5.0
    command_timeout: float = 60.0
    error_tail_lines: int = 10

    def valid_preset_files(self) -> List[str]:
        valid: List[str] = []
        for candidate in self.preset_files:
            text = str(candidate or "").strip()
            if text and os.path.isfile(text) and text not in valid:
                valid.append(text)
        return valid


class HandBrakeConverter(Converter):
    """Runs HandBrakeCLI for each job."""

    def __init__(self, config: Optional[HandBrakeConfig] = None) -> None:
        self.config = config or HandBrakeConfig()

    def _preset_import_args(self) -> List[str]:
        files = self.config.valid_preset_files()
        if not files:
            return ["--preset-import-gui"]
        args: List[str] = []
        for preset_file in files:
            args.extend(["--preset-import-file", preset_file])
        return args

    def build_command(self, input_path: str, output_path: str, preset: Optional[str] = None) -> List[str]:
        cmd = [self.config.cli_path, *self._preset_import_args(), "-i", input_path, "-o", output_path]
        if preset and preset.strip():
            cmd.extend(["-Z", preset.strip()])
        if self.config.additional_arguments.strip():
            cmd.extend(shlex.split(self.config.additional_arguments))
        return cmd

    def convert(
        self,
        input_path: str,
        output_path: str,
        preset: Optional[str],
        on_progress: ProgressCallback,
        cancel_signal: CancelSignal,
    ) -> ConversionResult:
        output_dir = os.path.dirname(os.path.abspath(output_path))
        os.makedirs(output_dir, exist_ok=True)
        return self._execute(self.build_command(input_path, output_path, preset), on_progress, cancel_signal)

    def _execute(
        self,
        cmd: Sequence[str],
        on_progress: ProgressCallback,
        cancel_signal: CancelSignal,
    ) -> ConversionResult:
        cancel_signal.raise_if_cancelled()
        try:
            proc = create_process(cmd)
        except FileNotFoundError as exc:
            raise ConversionFailedError(f"{cmd[0]} not found. Check the HandBrakeCLI path.") from exc
        except OSError as exc:
            raise ConversionFailedError(f"Could not launch {cmd[0]}: {exc}") from exc

        unregister = cancel_signal.register(lambda: kill_process(proc))
        tail: Deque[str] = deque(maxlen=self.config.error_tail_lines)
        last_progress = -1.0
        exit_code: Optional[int] = None
        try:
            if proc.stdout is not None:
                for raw in proc.stdout:
                    line = raw.strip()
                    if not line:
                        continue
                    progress = parse_progress(line)
                    if progress is None:
                        tail.append(line)
                        continue
                    if progress - last_progress > 0.1:
                        last_progress = progress
                        on_progress(progress)
            exit_code = proc.wait(timeout=self.config.kill_timeout) if cancel_signal.cancelled else proc.wait()
        except subprocess.TimeoutExpired:
            exit_code = None
        finally:
            unregister()
            if proc.poll() is None:
                exit_code = terminate_process(proc, self.config.kill_timeout)
            if proc.stdout is not None:
                proc.stdout.close()

        if cancel_signal.cancelled:
            raise ConversionCancelledError("Conversion was cancelled")
        if exit_code == 0:
            return ConversionResult.ok()
        reason = f"{os.path.basename(cmd[0])} exited with code {exit_code}"
        if tail:
            reason = reason + "\n" + "\n".join(tail)
        return ConversionResult.failed(reason, exit_code=exit_code)

    def _run_command(self, args: Sequence[str]) -> str:
        completed = subprocess.run(
            [self.config.cli_path, *args],
            capture_output=True,
            text=True,
            errors="replace",
            timeout=self.config.command_timeout,
        )
        output = (completed.stdout or "") + (completed.stderr or "")
        if completed.returncode != 0:
            raise ConversionFailedError(
                f"{self.config.cli_path} exited with code {completed.returncode}", exit_code=completed.returncode
            )
        return output

    def is_available(self) -> bool:
        try:
            output = self._run_command(["--version"])
        except (OSError, subprocess.SubprocessError, ConversionFailedError) as exc:
            logger.info("HandBrakeCLI unavailable (%s): %s", self.config.cli_path, exc)
            return False
        return "HandBrake" in output

    def list_presets(self) -> Dict[str, List[str]]:
        presets: Dict[str, List[str]] = {}
        for preset_file in self.config.valid_preset_files():
            names = read_preset_file(preset_file)
            if not names:
                continue
            custom = presets.setdefault("Custom", [])
            custom.extend(name for name in names if name not in custom)

        if presets:
            return presets

        try:
            output = self._run_command([*self._preset_import_args(), "--preset-list"])
        except (OSError, subprocess.SubprocessError, ConversionFailedError) as exc:
            logger.warning("Could not list HandBrake presets: %s", exc)
            return {}
        return parse_preset_list(output)
