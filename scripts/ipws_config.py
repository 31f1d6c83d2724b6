"""
Data root resolution and conversion settings for the ipws converter.

Resolves the data root at runtime so default paths work regardless
of where the dataset volume is mounted. Used by convert_ipws.py and
export_ipws.py.

Resolution order:
1. Walk up from the working directory to find ipws.json
2. IPWS_ROOT environment variable
3. Common mount points

Settings precedence (lowest to highest): built-in defaults, the
"settings" section of ipws.json, IPWS_* environment variables,
command-line flags.
"""

import json
import logging
import os
from pathlib import Path

# Common mount points to try as fallback
COMMON_MOUNT_POINTS = [
    "/mnt/data/ipws",
    "/data/ipws",
]

MANIFEST_FILE = "ipws.json"

# Large row groups break streaming previews in downstream Parquet viewers,
# so the default stays well below what the writer could handle.
DEFAULT_ROW_GROUP_SIZE = 100_000

DEFAULT_SETTINGS = {
    "row_group_size": DEFAULT_ROW_GROUP_SIZE,
    "compression": "zstd",
    "compression_level": 3,
    "max_malformed": None,
}

# Environment overrides: variable name -> (setting, parser)
ENV_OVERRIDES = {
    "IPWS_ROW_GROUP_SIZE": ("row_group_size", int),
    "IPWS_COMPRESSION_LEVEL": ("compression_level", int),
    "IPWS_MAX_MALFORMED": ("max_malformed", int),
}

DEFAULT_OUTPUTS = {
    "non_ip": "parquet/non_ip.parquet",
    "non_reflexive": "parquet/non_reflexive.parquet",
    "reflexive": "parquet/reflexive.parquet",
}


def _load_dotenv(root: Path):
    """Load .env file from data root into os.environ (setdefault, won't override)."""
    env_file = root / ".env"
    if env_file.exists():
        with open(env_file) as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith("#") and "=" in line:
                    key, _, val = line.partition("=")
                    os.environ.setdefault(key.strip(), val.strip())


def find_data_root(start: Path = None) -> Path:
    """Find the ipws data root directory.

    Candidates, first with an ipws.json wins: ``start`` (default: working
    directory) and up to four parents, $IPWS_ROOT, COMMON_MOUNT_POINTS.

    Also loads ROOT/.env into os.environ (if present).
    """
    current = (start or Path.cwd()).resolve()
    candidates = [current, *list(current.parents)[:4]]
    env_root = os.environ.get("IPWS_ROOT")
    if env_root:
        candidates.append(Path(env_root))
    candidates += [Path(mount) for mount in COMMON_MOUNT_POINTS]

    for candidate in candidates:
        if (candidate / MANIFEST_FILE).exists():
            _load_dotenv(candidate)
            return candidate

    raise FileNotFoundError(
        "Cannot find ipws data root. Ensure ipws.json exists or set IPWS_ROOT."
    )


def load_manifest(root: Path = None) -> dict:
    """Load the ipws.json manifest."""
    if root is None:
        root = find_data_root()
    with open(root / MANIFEST_FILE) as f:
        return json.load(f)


def resolve_paths(root: Path = None) -> dict:
    """Resolve input/output paths relative to the data root.

    Returns a dict with "root", "ws_in", "polytope_info_in" (when the
    manifest names them) and one "<partition>_out" entry per partition.
    """
    if root is None:
        root = find_data_root()
    manifest = load_manifest(root)

    paths = {"root": root}
    inputs = manifest.get("inputs", {})
    if "weight_systems" in inputs:
        paths["ws_in"] = root / inputs["weight_systems"]
    if "polytope_info" in inputs:
        paths["polytope_info_in"] = root / inputs["polytope_info"]

    outputs = {**DEFAULT_OUTPUTS, **manifest.get("outputs", {})}
    for partition, rel_path in outputs.items():
        paths[f"{partition}_out"] = root / rel_path

    return paths


def conversion_settings(root: Path = None) -> dict:
    """Merge default settings, the manifest and IPWS_* environment overrides.

    ``root`` may be None when no data root exists; then only defaults and
    the environment apply.
    """
    settings = dict(DEFAULT_SETTINGS)
    if root is not None:
        settings.update(load_manifest(root).get("settings", {}))

    for var, (name, parse) in ENV_OVERRIDES.items():
        raw = os.environ.get(var)
        if raw:
            try:
                settings[name] = parse(raw)
            except ValueError as e:
                raise ValueError(f"{var}={raw!r} is not a valid {name}") from e

    if settings["row_group_size"] < 1:
        raise ValueError(f"row_group_size must be positive, got {settings['row_group_size']}")
    return settings


def setup_logging(log_file: Path = None, level: int = logging.INFO):
    """Configure root logging for a CLI run: stderr, plus an optional log file."""
    handlers = [logging.StreamHandler()]
    if log_file is not None:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=handlers,
        force=True,
    )
