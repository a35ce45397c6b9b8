from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from batchbrake.utils import load_config, save_config

DEFAULT_OUTPUT_TEMPLATE = "$(Folder)/$(FileName)_converted.$(Ext)"

DEFAULT_VIDEO_EXTENSIONS: List[str] = [
    ".mp4",
    ".mkv",
    ".avi",
    ".mov",
    ".wmv",
    ".flv",
    ".webm",
    ".m4v",
    ".mpg",
    ".mpeg",
    ".3gp",
    ".ogv",
]

MIN_PARALLEL_INSTANCES = 1
MAX_PARALLEL_INSTANCES = 10


def _coerce_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"true", "1", "yes", "on"}:
            return True
        if normalized in {"false", "0", "no", "off"}:
            return False
    return default


def _coerce_int(value: Any, default: int, *, minimum: int, maximum: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return max(minimum, min(maximum, number))


def _coerce_str(value: Any, default: str) -> str:
    if value is None:
        return default
    text = str(value).strip()
    return text or default


def _coerce_str_list(value: Any, default: List[str]) -> List[str]:
    if not isinstance(value, (list, tuple)):
        return list(default)
    items = [str(item).strip() for item in value if str(item or "").strip()]
    return items


def normalize_extension(ext: str) -> str:
    text = ext.strip().lower()
    if text and not text.startswith("."):
        text = "." + text
    return text


@dataclass
class Preferences:
    default_parallel_instances: int = 2
    default_output_format: str = "mp4"
    default_output_path: str = DEFAULT_OUTPUT_TEMPLATE
    default_preset: str = ""
    delete_source_after_conversion: bool = False
    auto_save_session: bool = True
    max_log_lines: int = 1000
    supported_video_extensions: List[str] = field(default_factory=lambda: list(DEFAULT_VIDEO_EXTENSIONS))
    handbrake_cli_path: str = "HandBrakeCLI"
    ffmpeg_path: str = "ffmpeg"
    use_static_ffmpeg: bool = False
    preset_files: List[str] = field(default_factory=list)
    additional_arguments: str = ""

    @classmethod
    def from_mapping(cls, payload: Optional[Mapping[str, Any]]) -> "Preferences":
        defaults = cls()
        data = dict(payload or {})
        extensions = _coerce_str_list(data.get("supported_video_extensions"), defaults.supported_video_extensions)
        prefs = cls(
            default_parallel_instances=_coerce_int(
                data.get("default_parallel_instances"),
                defaults.default_parallel_instances,
                minimum=MIN_PARALLEL_INSTANCES,
                maximum=MAX_PARALLEL_INSTANCES,
            ),
            default_output_format=_coerce_str(data.get("default_output_format"), defaults.default_output_format).lstrip("."),
            default_output_path=_coerce_str(data.get("default_output_path"), defaults.default_output_path),
            default_preset=str(data.get("default_preset") or "").strip(),
            delete_source_after_conversion=_coerce_bool(
                data.get("delete_source_after_conversion"), defaults.delete_source_after_conversion
            ),
            auto_save_session=_coerce_bool(data.get("auto_save_session"), defaults.auto_save_session),
            max_log_lines=_coerce_int(data.get("max_log_lines"), defaults.max_log_lines, minimum=10, maximum=100000),
            supported_video_extensions=[normalize_extension(ext) for ext in extensions] or list(DEFAULT_VIDEO_EXTENSIONS),
            handbrake_cli_path=_coerce_str(data.get("handbrake_cli_path"), defaults.handbrake_cli_path),
            ffmpeg_path=_coerce_str(data.get("ffmpeg_path"), defaults.ffmpeg_path),
            use_static_ffmpeg=_coerce_bool(data.get("use_static_ffmpeg"), defaults.use_static_ffmpeg),
            preset_files=_coerce_str_list(data.get("preset_files"), []),
            additional_arguments=str(data.get("additional_arguments") or "").strip(),
        )
        env_cli = os.environ.get("BATCHBRAKE_HANDBRAKE_CLI")
        if env_cli:
            prefs.handbrake_cli_path = env_cli
        return prefs

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def is_supported_file(self, path: str) -> bool:
        ext = os.path.splitext(path)[1].lower()
        return ext in {normalize_extension(item) for item in self.supported_video_extensions}


def load_preferences() -> Preferences:
    config = load_config()
    stored = config.get("preferences") if isinstance(config, dict) else None
    return Preferences.from_mapping(stored if isinstance(stored, dict) else {})


def save_preferences(prefs: Preferences) -> None:
    config = load_config()
    if not isinstance(config, dict):
        config = {}
    config["preferences"] = prefs.as_dict()
    save_config(config)


def resolve_output_path(template: str, input_path: str, output_format: str) -> str:
    """Expand ``$(Folder)``, ``$(FileName)`` and ``$(Ext)`` for ``input_path``.

    ``$(Ext)`` is the target container extension without a leading dot.
    """
    folder = os.path.dirname(os.path.abspath(input_path))
    stem = os.path.splitext(os.path.basename(input_path))[0]
    ext = (output_format or "").strip().lstrip(".") or os.path.splitext(input_path)[1].lstrip(".")

    pattern = (template or DEFAULT_OUTPUT_TEMPLATE).replace("\\", "/")
    resolved = pattern.replace("$(Folder)", folder.replace("\\", "/"))
    resolved = resolved.replace("$(FileName)", stem).replace("$(Ext)", ext)
    resolved = os.path.normpath(os.path.expanduser(resolved))
    if not os.path.isabs(resolved):
        resolved = os.path.join(folder, resolved)
    return resolved
