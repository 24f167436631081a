"""Build configuration loading.

The effective configuration is built from, lowest precedence first:

    1. DEFAULT_SETTINGS below
    2. a JSON file (``--config`` or ``VM_IMAGE_BUILDER_CONFIG``)
    3. the ``MIRROR`` environment variable
    4. explicit overrides (CLI flags)

Nested mappings are merged key by key; lists replace the default list.
"""

from __future__ import annotations

import copy
import json
import os
from pathlib import Path
from typing import Any, Mapping, Optional

from vm_image_builder.domain.models import (
    AUTO_GROW_ATTRIBUTE,
    ESP_TYPE_GUID,
    ROOT_X86_64_TYPE_GUID,
    BuildConfig,
    FilesystemLayout,
    HostIdentity,
    ImageSpec,
    PartitionSpec,
    parse_size,
)
from vm_image_builder.exceptions import ConfigError


CONFIG_PATH_ENV = "VM_IMAGE_BUILDER_CONFIG"
MIRROR_ENV = "MIRROR"

DEFAULT_SETTINGS: dict[str, Any] = {
    "image": {
        "size": "2G",
        "raw_path": "image.img",
        "export_path": "image.qcow2",
        "export_format": "qcow2",
    },
    "release": "bookworm",
    "mirror": "http://deb.debian.org/debian",
    "arch": "amd64",
    "esp": {
        "size": "200M",
        "label": "ESP",
        "type": ESP_TYPE_GUID,
        "dir": "efi",
    },
    "root": {
        "label": "Debian",
        "type": ROOT_X86_64_TYPE_GUID,
        "subvolume": "@debian",
        "options": "compress=zstd,noatime",
        "auto_grow": True,
    },
    "identity": {
        "hostname": "debian",
        "keymap": "us",
        "locale": "C.UTF-8",
        "timezone": "UTC",
        "shell": "/usr/bin/zsh",
    },
    "packages": [
        "btrfs-progs",
        "chrony",
        "cloud-guest-utils",
        "cloud-init",
        "htop",
        "linux-image-amd64",
        "man-db",
        "neovim",
        "openssh-server",
        "systemd-boot",
        "systemd-resolved",
        "sudo",
        "zsh",
        "zsh-autosuggestions",
        "zsh-syntax-highlighting",
    ],
    "services": [
        "cloud-init",
        "cloud-init-local",
        "cloud-config",
        "cloud-final",
        "ssh",
        "systemd-boot-update",
        "systemd-networkd",
        "systemd-resolved",
    ],
    "network_match": "en*",
    "console_parameters": [
        "rw",
        "console=tty0",
        "console=ttyS0,115200",
        "earlyprintk=ttyS0,115200",
        "consoleblank=0",
    ],
    "shell_rc": {
        "path": "/etc/zsh/zshrc",
        "lines": [
            "source /usr/share/zsh-autosuggestions/zsh-autosuggestions.zsh",
            "source /usr/share/zsh-syntax-highlighting/zsh-syntax-highlighting.zsh",
        ],
    },
    "editor_links": {
        "/usr/local/bin/vim": "/usr/bin/nvim",
        "/usr/local/bin/vi": "/usr/bin/nvim",
    },
}


def merge_settings(base: Mapping[str, Any], override: Mapping[str, Any], path: str = "") -> dict[str, Any]:
    """Merge ``override`` into a copy of ``base``.

    Raises:
        ConfigError: On unknown keys or a mapping replaced by a non-mapping
    """
    merged = copy.deepcopy(dict(base))
    for key, value in override.items():
        dotted = f"{path}{key}"
        if key not in merged:
            raise ConfigError(f"Unknown configuration key: {dotted}")
        if isinstance(merged[key], dict) and dotted != "editor_links":
            if not isinstance(value, Mapping):
                raise ConfigError(f"Configuration key {dotted} must be a mapping")
            merged[key] = merge_settings(merged[key], value, f"{dotted}.")
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def load_settings_file(path: Path) -> dict[str, Any]:
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except OSError as error:
        raise ConfigError(f"Cannot read configuration {path}: {error}") from error
    except json.JSONDecodeError as error:
        raise ConfigError(f"Invalid JSON in {path}: {error}") from error
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration {path} must contain a JSON object")
    return data


def load_settings(
    path: Optional[Path] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> dict[str, Any]:
    """Resolve the effective settings mapping."""
    environ = os.environ if environ is None else environ
    settings = copy.deepcopy(DEFAULT_SETTINGS)
    if path is None and environ.get(CONFIG_PATH_ENV):
        path = Path(environ[CONFIG_PATH_ENV])
    if path is not None:
        settings = merge_settings(settings, load_settings_file(path))
    if environ.get(MIRROR_ENV):
        settings["mirror"] = environ[MIRROR_ENV]
    if overrides:
        settings = merge_settings(settings, overrides)
    return settings


def _require_str(value: Any, key: str) -> str:
    if not isinstance(value, str) or not value:
        raise ConfigError(f"Configuration key {key} must be a non-empty string")
    return value


def _require_str_list(value: Any, key: str) -> list[str]:
    if not isinstance(value, list) or not all(isinstance(item, str) and item for item in value):
        raise ConfigError(f"Configuration key {key} must be a list of strings")
    return value


def _size(value: Any, key: str) -> int:
    try:
        return parse_size(value)
    except ValueError as error:
        raise ConfigError(f"Configuration key {key}: {error}") from error


def build_config(settings: Mapping[str, Any]) -> BuildConfig:
    """Turn a settings mapping into a validated BuildConfig.

    Raises:
        ConfigError: On missing values or wrong types
    """
    image = settings["image"]
    esp = settings["esp"]
    root = settings["root"]
    identity = settings["identity"]
    shell_rc = settings["shell_rc"]

    esp_size = _size(esp["size"], "esp.size")
    partitions = (
        PartitionSpec(
            type_guid=_require_str(esp["type"], "esp.type").upper(),
            label=_require_str(esp["label"], "esp.label"),
            size_bytes=esp_size,
        ),
        PartitionSpec(
            type_guid=_require_str(root["type"], "root.type").upper(),
            label=_require_str(root["label"], "root.label"),
            size_bytes=None,
            attributes=(AUTO_GROW_ATTRIBUTE,) if root.get("auto_grow") else (),
        ),
    )

    size_bytes = _size(image["size"], "image.size")
    if size_bytes <= 0 or size_bytes % 512:
        raise ConfigError(f"image.size must be a positive multiple of 512, got {size_bytes}")

    editor_links = settings["editor_links"]
    if not isinstance(editor_links, Mapping):
        raise ConfigError("Configuration key editor_links must be a mapping")

    return BuildConfig(
        image=ImageSpec(
            size_bytes=size_bytes,
            raw_path=Path(_require_str(image["raw_path"], "image.raw_path")),
            export_path=Path(_require_str(image["export_path"], "image.export_path")),
            export_format=_require_str(image["export_format"], "image.export_format"),
            partitions=partitions,
        ),
        layout=FilesystemLayout(
            esp_label=esp["label"],
            esp_dir=_require_str(esp["dir"], "esp.dir").strip("/"),
            root_label=root["label"],
            root_subvolume=_require_str(root["subvolume"], "root.subvolume"),
            root_options=_require_str(root["options"], "root.options"),
        ),
        identity=HostIdentity(
            hostname=_require_str(identity["hostname"], "identity.hostname"),
            keymap=_require_str(identity["keymap"], "identity.keymap"),
            locale=_require_str(identity["locale"], "identity.locale"),
            timezone=_require_str(identity["timezone"], "identity.timezone"),
            shell=_require_str(identity["shell"], "identity.shell"),
        ),
        release=_require_str(settings["release"], "release"),
        mirror=_require_str(settings["mirror"], "mirror"),
        arch=_require_str(settings["arch"], "arch"),
        packages=frozenset(_require_str_list(settings["packages"], "packages")),
        services=frozenset(_require_str_list(settings["services"], "services")),
        network_match=_require_str(settings["network_match"], "network_match"),
        console_parameters=tuple(
            _require_str_list(settings["console_parameters"], "console_parameters")
        ),
        shell_rc_path=_require_str(shell_rc["path"], "shell_rc.path"),
        shell_rc_lines=tuple(_require_str_list(shell_rc["lines"], "shell_rc.lines")),
        editor_links=tuple(
            (_require_str(link, "editor_links"), _require_str(target, "editor_links"))
            for link, target in sorted(editor_links.items())
        ),
    )


def load_build_config(
    path: Optional[Path] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> BuildConfig:
    return build_config(load_settings(path, overrides, environ))
