"""Settings for debate-rtc.

Values are resolved from, lowest to highest precedence: built-in defaults,
the TOML file, DEBATE_RTC_* environment variables, then command line
options (applied by the caller).

The TOML file is ``./debate-rtc.toml`` or, failing that,
``~/.debate-rtc/config.toml``. Connection settings live under
``[environments.<name>]`` where the name comes from DEBATE_RTC_ENV
(development, staging or production; production when unset).

Example file::

    [environments.production]
    signaling_websocket = "wss://signal.example.org"
    room_store_url = "https://project.supabase.co"

    [voice]
    policy = "asymmetric"
    reconnect_grace = 5.0

    [[voice.ice_servers]]
    urls = "turn:turn.example.org:3478"
    username = "user"
    credential = "secret"
"""

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from loguru import logger

# Role policies
POLICY_ASYMMETRIC = "asymmetric"
POLICY_SYMMETRIC = "symmetric"

VALID_POLICIES = {POLICY_ASYMMETRIC, POLICY_SYMMETRIC}

# Public STUN servers used when nothing is configured
DEFAULT_ICE_SERVERS = [
    {"urls": "stun:stun.l.google.com:19302"},
    {"urls": "stun:stun1.l.google.com:19302"},
    {"urls": "stun:stun2.l.google.com:19302"},
    {"urls": "stun:stun3.l.google.com:19302"},
    {"urls": "stun:stun4.l.google.com:19302"},
    {"urls": "stun:stun.stunprotocol.org:3478"},
]

DEFAULT_SIGNALING_WEBSOCKET = "ws://localhost:8765"

VALID_ENVIRONMENTS = {"development", "staging", "production"}

# Connection settings and the environment variable overriding each
CONNECTION_SETTINGS = {
    "signaling_websocket": "DEBATE_RTC_SIGNALING_WS",
    "room_store_url": "DEBATE_RTC_ROOM_STORE_URL",
    "room_store_key": "DEBATE_RTC_ROOM_STORE_KEY",
}


@dataclass
class AudioConstraints:
    """Capture constraints for the local microphone.

    Attributes:
        device: Capture device name for the ffmpeg input (None = platform default).
        format: ffmpeg input format, e.g. "pulse", "alsa", "avfoundation".
        sample_rate: Requested capture sample rate in Hz.
        channels: Requested channel count.
        echo_cancellation: Request echo cancellation from backends that offer it.
        noise_suppression: Request noise suppression from backends that offer it.
        auto_gain_control: Request automatic gain control from backends that offer it.
    """

    device: Optional[str] = None
    format: Optional[str] = None
    sample_rate: int = 48000
    channels: int = 1
    echo_cancellation: bool = True
    noise_suppression: bool = True
    auto_gain_control: bool = True

    @classmethod
    def from_dict(cls, data: dict) -> "AudioConstraints":
        """Create AudioConstraints from a TOML [voice.audio] table, ignoring unknown keys."""
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        unknown = set(data) - set(known)
        if unknown:
            logger.warning(f"Ignoring unknown audio settings: {', '.join(sorted(unknown))}")
        return cls(**known)


@dataclass
class VoiceConfig:
    """Tuning for the voice mesh.

    Attributes:
        policy: "asymmetric" (only initiators offer) or "symmetric" (everyone may offer).
        gather_timeout: Seconds to wait for candidate gathering before sending a description.
        answer_timeout: Seconds an offer may wait for its answer.
        reconnect_grace: Seconds a disconnected peer may take to recover.
        offer_retries: Additional offer attempts after the first failure.
        offer_retry_delay: Seconds between offer attempts.
        ice_servers: List of {"urls", "username", "credential"} dictionaries.
        audio: Capture constraints.
        output_device: Playback device for remote audio (None = default).
        output_format: ffmpeg output format for remote audio, e.g. "pulse".
    """

    policy: str = POLICY_ASYMMETRIC
    gather_timeout: float = 3.0
    answer_timeout: float = 15.0
    reconnect_grace: float = 5.0
    offer_retries: int = 2
    offer_retry_delay: float = 1.0
    ice_servers: List[dict] = field(default_factory=lambda: list(DEFAULT_ICE_SERVERS))
    audio: AudioConstraints = field(default_factory=AudioConstraints)
    output_device: Optional[str] = None
    output_format: Optional[str] = None

    def __post_init__(self):
        if self.policy not in VALID_POLICIES:
            raise ValueError(
                f"Invalid policy '{self.policy}'. Valid values are: {', '.join(sorted(VALID_POLICIES))}"
            )
        if self.offer_retries < 0:
            raise ValueError("offer_retries cannot be negative")

    @classmethod
    def from_dict(cls, data: dict) -> "VoiceConfig":
        """Create VoiceConfig from a TOML [voice] dictionary.

        Invalid values are logged and replaced by defaults.
        """
        config = cls()

        policy = data.get("policy")
        if policy is not None:
            if policy in VALID_POLICIES:
                config.policy = policy
            else:
                logger.warning(f"Skipping invalid voice policy: {policy!r}")

        for name in ("gather_timeout", "answer_timeout", "reconnect_grace", "offer_retry_delay"):
            if name not in data:
                continue
            try:
                value = float(data[name])
            except (TypeError, ValueError):
                logger.warning(f"Skipping invalid {name}: {data[name]!r}")
                continue
            if value <= 0:
                logger.warning(f"Skipping non-positive {name}: {value}")
                continue
            setattr(config, name, value)

        if "offer_retries" in data:
            try:
                retries = int(data["offer_retries"])
                if retries < 0:
                    raise ValueError(retries)
                config.offer_retries = retries
            except (TypeError, ValueError):
                logger.warning(f"Skipping invalid offer_retries: {data['offer_retries']!r}")

        if "ice_servers" in data:
            servers = []
            for entry in data["ice_servers"]:
                if not isinstance(entry, dict) or "urls" not in entry:
                    logger.warning(f"Skipping invalid ICE server entry (missing urls): {entry}")
                    continue
                servers.append(
                    {k: entry[k] for k in ("urls", "username", "credential") if k in entry}
                )
            config.ice_servers = servers

        if "audio" in data:
            try:
                config.audio = AudioConstraints.from_dict(data["audio"])
            except (TypeError, ValueError) as e:
                logger.warning(f"Skipping invalid audio settings: {e}")

        config.output_device = data.get("output_device", config.output_device)
        config.output_format = data.get("output_format", config.output_format)

        return config


class Config:
    """Connection settings plus the raw ``[voice]`` table for one environment.

    Attributes:
        signaling_websocket: URL of the signaling relay.
        room_store_url: Base URL of the PostgREST room backend, if any.
        room_store_key: API key for the room backend, if any.
        environment: Active environment name.
    """

    def __init__(self):
        self.signaling_websocket: str = DEFAULT_SIGNALING_WEBSOCKET
        self.room_store_url: Optional[str] = None
        self.room_store_key: Optional[str] = None
        self.environment: str = "production"
        self._config_data: dict = {}
        self._policy_override: Optional[str] = None

    def load(self) -> None:
        """Populate settings: defaults, then the TOML file, then env vars."""
        self.environment = self._get_environment()

        path = self._find_config_file()
        if path is not None:
            self._load_config_file(path)

        self._apply_env_overrides()

    def _get_environment(self) -> str:
        env = os.getenv("DEBATE_RTC_ENV", "production").lower()
        if env in VALID_ENVIRONMENTS:
            return env
        logger.warning(
            f"Unknown DEBATE_RTC_ENV '{env}' "
            f"(expected one of {', '.join(sorted(VALID_ENVIRONMENTS))}), using 'production'"
        )
        return "production"

    def _find_config_file(self) -> Optional[Path]:
        """Return the first existing config file.

        The working directory's ``debate-rtc.toml`` wins over
        ``~/.debate-rtc/config.toml``.
        """
        candidates = (
            Path.cwd() / "debate-rtc.toml",
            Path.home() / ".debate-rtc" / "config.toml",
        )
        for path in candidates:
            if path.exists():
                logger.info(f"Using config file {path}")
                return path
        logger.debug("No debate-rtc config file, using built-in defaults")
        return None

    def _load_config_file(self, path: Path) -> None:
        try:
            with open(path, "rb") as f:
                self._config_data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            logger.warning(f"Could not read {path}: {e}. Using defaults.")
            self._config_data = {}
            return

        section = self._config_data.get("environments", {}).get(self.environment, {})
        if not section:
            logger.debug(f"{path} has no [environments.{self.environment}] table")
            return

        for attr in CONNECTION_SETTINGS:
            if attr in section:
                setattr(self, attr, section[attr])
                if attr != "room_store_key":
                    logger.debug(f"{attr} = {section[attr]} (from {path.name})")

    def _apply_env_overrides(self) -> None:
        """Let DEBATE_RTC_* variables replace file values.

        Command line options are applied later by the caller.
        """
        for attr, var in CONNECTION_SETTINGS.items():
            value = os.getenv(var)
            if not value:
                continue
            setattr(self, attr, value)
            if attr != "room_store_key":
                logger.info(f"{attr} = {value} (from {var})")

        policy = os.getenv("DEBATE_RTC_POLICY")
        if not policy:
            return
        if policy in VALID_POLICIES:
            self._policy_override = policy
            logger.info(f"Voice policy set to {policy} by DEBATE_RTC_POLICY")
        else:
            logger.warning(f"Ignoring invalid DEBATE_RTC_POLICY value '{policy}'")

    def get_voice_config(self) -> VoiceConfig:
        """Build a fresh VoiceConfig from the ``[voice]`` table."""
        voice = VoiceConfig.from_dict(self._config_data.get("voice", {}))
        if self._policy_override:
            voice.policy = self._policy_override
        return voice


_config: Optional[Config] = None


def get_config() -> Config:
    """Return the process-wide Config, loading it on first use."""
    global _config
    if _config is None:
        _config = Config()
        _config.load()
    return _config


def reload_config() -> Config:
    """Discard the cached Config and load a new one."""
    global _config
    _config = Config()
    _config.load()
    return _config
