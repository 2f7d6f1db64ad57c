"""!
@brief Settings model and JSON configuration loading.
@details Settings default to the behaviour fleet technicians expect from the
legacy scripts and can be overridden per site with a JSON file. Unknown keys
are rejected so typos in a deployed configuration surface immediately instead
of silently falling back to defaults. Command-line flags are applied last via
:func:`apply_overrides`.
"""
from __future__ import annotations

import dataclasses
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from . import execution_policy, fs_tools, power
from .packages import PackageSpec


class ConfigError(ValueError):
    """!
    @brief Raised when a configuration file cannot be read or validated.
    """


DEFAULT_BASELINE_PACKAGES = (
    PackageSpec("Google.Chrome", choco_id="googlechrome"),
    PackageSpec("7zip.7zip", choco_id="7zip"),
    PackageSpec("Adobe.Acrobat.Reader.64-bit", choco_id="adobereader"),
    PackageSpec("VideoLAN.VLC", choco_id="vlc"),
)

DEFAULT_UNIFI_VERSION = "8.6.9"

DEFAULT_ASSISTANT_URLS = (
    "https://go.microsoft.com/fwlink/?linkid=2171764",
    "https://download.microsoft.com/download/6/8/3/683178b7-baac-4b0d-95be-065a945aadee/Windows11InstallationAssistant.exe",
)


@dataclass
class WindowsUpdateSettings:
    microsoft_update: bool = True
    include_drivers: bool = False
    timeout: int = 4 * 60 * 60


@dataclass
class OfficeUpdateSettings:
    display: bool = False
    force_shutdown: bool = True
    update_to_version: Optional[str] = None
    client_path: Optional[str] = None


@dataclass
class CleanupSettings:
    min_age_days: int = 2
    include_update_cache: bool = False
    empty_recycle_bin: bool = False
    extra_paths: List[str] = field(default_factory=list)


@dataclass
class RepairSettings:
    dism_source: Optional[str] = None
    create_restore_point: bool = True
    component_cleanup: bool = False


@dataclass
class UnifiSettings:
    version: str = DEFAULT_UNIFI_VERSION
    installer_urls: List[str] = field(default_factory=list)
    java_package: str = "EclipseAdoptium.Temurin.17.JRE"
    open_firewall: bool = True

    def resolved_installer_urls(self) -> List[str]:
        """!
        @brief Installer URL chain, defaulting to the Ubiquiti download host.
        """

        if self.installer_urls:
            return list(self.installer_urls)
        return [
            f"https://dl.ui.com/unifi/{self.version}/UniFi-installer.exe",
            f"https://dl-origin.ubnt.com/unifi/{self.version}/UniFi-installer.exe",
        ]


@dataclass
class UpgradeSettings:
    assistant_urls: List[str] = field(default_factory=lambda: list(DEFAULT_ASSISTANT_URLS))
    target_build: int = 26100
    timeout: int = 6 * 60 * 60


@dataclass
class Settings:
    """!
    @brief Complete runtime configuration for a maintenance session.
    """

    log_directory: Optional[str] = None
    work_directory: Optional[str] = None
    session_power_plan: str = "high_performance"
    permanent_power_plan: Optional[str] = None
    manage_power_plan: bool = True
    manage_execution_policy: bool = True
    execution_policy: str = "Bypass"
    execution_policy_scope: str = "LocalMachine"
    baseline_packages: List[PackageSpec] = field(
        default_factory=lambda: list(DEFAULT_BASELINE_PACKAGES)
    )
    chocolatey_fallback: bool = True
    upgrade_installed_packages: bool = True
    windows_update: WindowsUpdateSettings = field(default_factory=WindowsUpdateSettings)
    office_update: OfficeUpdateSettings = field(default_factory=OfficeUpdateSettings)
    cleanup: CleanupSettings = field(default_factory=CleanupSettings)
    repair: RepairSettings = field(default_factory=RepairSettings)
    unifi: UnifiSettings = field(default_factory=UnifiSettings)
    upgrade: UpgradeSettings = field(default_factory=UpgradeSettings)
    power_timeouts: Dict[str, int] = field(
        default_factory=lambda: {
            "monitor-timeout-ac": 30,
            "standby-timeout-ac": 0,
            "hibernate-timeout-ac": 0,
        }
    )
    disable_hibernation: bool = True
    download_attempts: int = 3
    stop_on_failure: bool = False
    reboot_after: bool = False
    reboot_delay: int = 60
    timeout: Optional[int] = None

    @property
    def log_path(self) -> Path:
        if self.log_directory:
            return Path(self.log_directory).expanduser()
        return fs_tools.get_default_log_directory()

    @property
    def work_path(self) -> Path:
        if self.work_directory:
            return Path(self.work_directory).expanduser()
        return fs_tools.get_default_work_directory()

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


_SECTION_TYPES = {
    "windows_update": WindowsUpdateSettings,
    "office_update": OfficeUpdateSettings,
    "cleanup": CleanupSettings,
    "repair": RepairSettings,
    "unifi": UnifiSettings,
    "upgrade": UpgradeSettings,
}


def _coerce_package(entry: object, location: str) -> PackageSpec:
    if isinstance(entry, str):
        if not entry.strip():
            raise ConfigError(f"{location}: package id must not be empty")
        return PackageSpec(entry.strip())
    if isinstance(entry, Mapping):
        allowed = {item.name for item in dataclasses.fields(PackageSpec)}
        unknown = sorted(set(entry) - allowed)
        if unknown:
            raise ConfigError(f"{location}: unknown package keys {', '.join(unknown)}")
        if not entry.get("id"):
            raise ConfigError(f"{location}: package entries require an 'id'")
        spec = PackageSpec(**{str(key): value for key, value in entry.items()})
        _check_fields(spec, location)
        if spec.source not in ("winget", "choco"):
            raise ConfigError(f"{location}: source must be winget or choco, got {spec.source!r}")
        return spec
    raise ConfigError(f"{location}: expected a package id or object, got {type(entry).__name__}")


_SCALAR_TYPES = {"bool": bool, "int": int, "str": str}

# Fields that must not be negative; a value of zero is meaningful for each.
_NON_NEGATIVE = {"min_age_days", "reboot_delay"}
# Fields that must be at least one when set.
_POSITIVE = {"timeout", "download_attempts", "target_build"}


def _matches(annotation: str, value: object) -> bool:
    if annotation.startswith("Optional["):
        return value is None or _matches(annotation[len("Optional[") : -1], value)
    if annotation == "List[str]":
        return isinstance(value, list) and all(isinstance(item, str) for item in value)
    expected = _SCALAR_TYPES.get(annotation)
    if expected is None:
        return True
    if expected is int and isinstance(value, bool):
        return False
    return isinstance(value, expected)


def _check_fields(instance: object, location: str) -> None:
    """!
    @brief Validate scalar and string-list fields of a settings dataclass.
    @details Annotations are compared by name; nested sections and package
    lists are validated by their own builders.
    """

    for item in dataclasses.fields(instance):
        value = getattr(instance, item.name)
        where = f"{location}.{item.name}" if location else item.name
        if not _matches(str(item.type), value):
            raise ConfigError(f"{where}: expected {item.type}, got {type(value).__name__}")
        if isinstance(value, int) and not isinstance(value, bool):
            if item.name in _NON_NEGATIVE and value < 0:
                raise ConfigError(f"{where}: must not be negative")
            if item.name in _POSITIVE and value < 1:
                raise ConfigError(f"{where}: must be at least 1")


def _build_section(cls: type, data: object, location: str) -> Any:
    if not isinstance(data, Mapping):
        raise ConfigError(f"{location}: expected an object")
    allowed = {item.name for item in dataclasses.fields(cls)}
    unknown = sorted(set(data) - allowed)
    if unknown:
        raise ConfigError(f"{location}: unknown keys {', '.join(unknown)}")
    try:
        section = cls(**dict(data))
    except TypeError as exc:
        raise ConfigError(f"{location}: {exc}") from exc
    _check_fields(section, location)
    return section


def _check_extra_paths(paths: List[str]) -> None:
    for index, path in enumerate(paths):
        if not fs_tools.is_absolute_path(path):
            raise ConfigError(f"cleanup.extra_paths[{index}]: expected an absolute path, got {path!r}")


def validate_settings(settings: Settings) -> Settings:
    """!
    @brief Check field types, ranges and named values of ``settings``.
    @details Execution policy and scope names are normalised to their
    PowerShell spelling. Power plan aliases are checked but stored as given so
    reports keep the operator's wording.
    @throws ConfigError On the first invalid value.
    """

    _check_fields(settings, "")
    for name, section_type in _SECTION_TYPES.items():
        if not isinstance(getattr(settings, name), section_type):
            raise ConfigError(f"{name}: expected an object")
    _check_extra_paths(settings.cleanup.extra_paths)

    try:
        settings.execution_policy = execution_policy.normalize_policy(settings.execution_policy)
        settings.execution_policy_scope = execution_policy.normalize_scope(settings.execution_policy_scope)
        for plan in (settings.session_power_plan, settings.permanent_power_plan):
            if plan:
                power.resolve_plan(plan)
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc
    return settings


def settings_from_mapping(data: Mapping[str, object]) -> Settings:
    """!
    @brief Build :class:`Settings` from a decoded JSON object.
    @throws ConfigError On unknown keys or malformed sections.
    """

    if not isinstance(data, Mapping):
        raise ConfigError("configuration root must be a JSON object")

    allowed = {item.name for item in dataclasses.fields(Settings)}
    unknown = sorted(set(data) - allowed)
    if unknown:
        raise ConfigError(f"unknown configuration keys: {', '.join(unknown)}")

    kwargs: Dict[str, Any] = {}
    for key, value in data.items():
        if key in _SECTION_TYPES:
            kwargs[key] = _build_section(_SECTION_TYPES[key], value, key)
        elif key == "baseline_packages":
            if not isinstance(value, list):
                raise ConfigError("baseline_packages: expected a list")
            kwargs[key] = [
                _coerce_package(entry, f"baseline_packages[{index}]")
                for index, entry in enumerate(value)
            ]
        elif key == "power_timeouts":
            if not isinstance(value, Mapping) or not all(
                isinstance(minutes, int) and minutes >= 0 for minutes in value.values()
            ):
                raise ConfigError("power_timeouts: expected an object of non-negative minutes")
            kwargs[key] = {str(name): int(minutes) for name, minutes in value.items()}
        else:
            kwargs[key] = value

    return validate_settings(Settings(**kwargs))


def load_settings(path: Path | str | None = None) -> Settings:
    """!
    @brief Load settings from ``path`` or the machine-wide default file.
    @details A missing default file yields built-in defaults; a missing file
    named explicitly by the caller is an error.
    @throws ConfigError When the file cannot be read or parsed.
    """

    explicit = path is not None
    config_path = Path(path).expanduser() if path is not None else fs_tools.get_default_config_path()

    if not config_path.exists():
        if explicit:
            raise ConfigError(f"configuration file not found: {config_path}")
        return Settings()

    try:
        raw = json.loads(config_path.read_text(encoding="utf-8-sig"))
    except OSError as exc:
        raise ConfigError(f"unable to read {config_path}: {exc}") from exc
    except ValueError as exc:
        raise ConfigError(f"invalid JSON in {config_path}: {exc}") from exc

    return settings_from_mapping(raw)


def apply_overrides(settings: Settings, overrides: Mapping[str, object]) -> Settings:
    """!
    @brief Return a copy of ``settings`` with non-``None`` overrides applied.
    @details Only top-level fields are overridable; the CLI exposes nothing
    deeper.
    """

    allowed = {item.name for item in dataclasses.fields(Settings)}
    changes = {
        key: value for key, value in overrides.items() if value is not None and key in allowed
    }
    return dataclasses.replace(settings, **changes)


__all__ = [
    "CleanupSettings",
    "ConfigError",
    "OfficeUpdateSettings",
    "RepairSettings",
    "Settings",
    "UnifiSettings",
    "UpgradeSettings",
    "WindowsUpdateSettings",
    "apply_overrides",
    "load_settings",
    "settings_from_mapping",
    "validate_settings",
]
