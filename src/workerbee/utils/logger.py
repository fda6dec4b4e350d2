import json
import logging
import logging.config
import time
from collections.abc import Mapping
from datetime import datetime, timezone
from enum import Enum
from functools import lru_cache
from logging import Logger
from pathlib import Path
from typing import Any

_DEBUG_ENABLED = False
_DEBUG_MODULES: set[str] = set()
_CONFIGURED = False
_RUN_ID: str | None = None
_PROFILE: str | None = None

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parents[3] / "configs" / "logging.json"

# ---------------------------------------------------------------------
# Log categories, lifted to the top level of each JSON record
# ---------------------------------------------------------------------

CATEGORY_DATA_SOURCE = "data_source_health"
CATEGORY_MATCH = "match_trace"
CATEGORY_PROVIDER = "provider_isolation"
CATEGORY_LIFECYCLE = "subscription_lifecycle"
CATEGORY_HEARTBEAT = "health_heartbeat"


def _merge_profile(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for k, v in override.items():
        if isinstance(v, dict) and isinstance(merged.get(k), dict):
            merged[k] = _merge_profile(merged[k], v)
        else:
            merged[k] = v
    return merged


def _section(cfg: dict[str, Any], name: str) -> dict[str, Any]:
    value = cfg.get(name)
    return value if isinstance(value, dict) else {}


def _handlers(profile: dict[str, Any], *, formatter: str, level: str, run_id: str | None, name: str) -> dict[str, Any]:
    handlers_cfg = _section(profile, "handlers")
    console, file = _section(handlers_cfg, "console"), _section(handlers_cfg, "file")
    common = {"formatter": formatter, "filters": ["context"]}

    out: dict[str, Any] = {}
    if console.get("enabled", True):
        out["console"] = {
            **common,
            "class": "logging.StreamHandler",
            "level": str(console.get("level", level)).upper(),
            "stream": "ext://sys.stderr",
        }
    if file.get("enabled", False):
        # one JSONL file per profile and run, e.g. artifacts/logs/live-<run_id>.jsonl
        template = str(file.get("path", "artifacts/logs/{profile}-{run_id}.jsonl"))
        path = Path(template.format(profile=name, run_id=run_id or "run"))
        path.parent.mkdir(parents=True, exist_ok=True)
        out["file"] = {
            **common,
            "class": "logging.FileHandler",
            "level": str(file.get("level", level)).upper(),
            "filename": str(path),
            "encoding": "utf-8",
        }
    return out


def init_logging(
    config_path: str | Path | None = None,
    *,
    run_id: str | None = None,
    profile: str | None = None,
) -> None:
    """Configure logging from a JSON file holding named profiles.

    Profiles are merged over the ``default`` profile. ``profile`` falls back to
    the file's ``active_profile``. Every record written afterwards carries
    ``run_id`` and ``profile`` in its context.
    """
    global _DEBUG_ENABLED, _DEBUG_MODULES, _CONFIGURED, _RUN_ID, _PROFILE

    path = Path(config_path) if config_path is not None else DEFAULT_CONFIG_PATH
    if not path.is_absolute():
        path = Path.cwd() / path
    cfg = json.loads(path.read_text(encoding="utf-8"))

    profiles = cfg.get("profiles", {})
    if not isinstance(profiles, dict):
        raise TypeError("logging.json 'profiles' must be a dict")
    name = str(profile or cfg.get("active_profile") or "default")
    if name not in profiles:
        raise KeyError(f"logging profile not found: {name}")
    merged = _merge_profile(_section(profiles, "default"), profiles[name])

    debug_cfg = _section(merged, "debug")
    _DEBUG_ENABLED = bool(debug_cfg.get("enabled", False))
    _DEBUG_MODULES = {str(m) for m in debug_cfg.get("modules", [])}
    _RUN_ID, _PROFILE = run_id, name

    level = str(merged.get("level", "INFO")).upper()
    formatter = "json" if _section(merged, "format").get("json", True) else "standard"
    handlers = _handlers(merged, formatter=formatter, level=level, run_id=run_id, name=name)

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {"context": {"()": "workerbee.utils.logger.ContextFilter"}},
        "formatters": {
            "json": {"()": "workerbee.utils.logger.JsonFormatter"},
            "standard": {
                "()": "workerbee.utils.logger.UtcFormatter",
                "format": "%(asctime)s %(levelname)s %(name)s %(message)s %(context)s",
                "datefmt": "%Y-%m-%dT%H:%M:%S",
            },
        },
        "handlers": handlers,
        "root": {"level": level, "handlers": list(handlers)},
    })
    _CONFIGURED = True
    get_logger.cache_clear()


class ContextFilter(logging.Filter):
    """Gives every record a dict `context`; adds run_id / profile once configured."""

    def filter(self, record: logging.LogRecord) -> bool:
        ctx = getattr(record, "context", None)
        if not isinstance(ctx, dict):
            ctx = {} if ctx is None else {"_context": safe_jsonable(ctx)}
            record.context = ctx
        if _CONFIGURED:
            if _RUN_ID is not None:
                ctx.setdefault("run_id", _RUN_ID)
            if _PROFILE is not None:
                ctx.setdefault("profile", _PROFILE)
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per record; `category` is lifted to the top level."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds"),
            "ts_ms": int(record.created * 1000),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
        }
        context = getattr(record, "context", None)
        context = dict(context) if isinstance(context, dict) else {}
        if "category" in context:
            payload["category"] = context.pop("category")
        if context:
            payload["context"] = safe_jsonable(context)
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


class UtcFormatter(logging.Formatter):
    converter = time.gmtime


@lru_cache(None)
def get_logger(name: str = "workerbee") -> Logger:
    return logging.getLogger(name)


def safe_jsonable(x: Any) -> Any:
    """
    Reduce log context to JSON types.

    Chain payloads are already JSON; what remains are enums (observe modes,
    phases), exceptions, sets of account names, and values such as Decimal
    or Amount that render through str().
    """
    if x is None or isinstance(x, (str, int, float, bool)):
        return x
    if isinstance(x, Enum):
        return safe_jsonable(x.value)
    if isinstance(x, BaseException):
        return f"{type(x).__name__}: {x}"
    if isinstance(x, Mapping):
        return {k if isinstance(k, str) else str(k): safe_jsonable(v) for k, v in x.items()}
    if isinstance(x, (set, frozenset)):
        return sorted((safe_jsonable(v) for v in x), key=str)
    if isinstance(x, (list, tuple)):
        return [safe_jsonable(v) for v in x]
    return str(x)


def _context(context: dict[str, Any]) -> dict[str, Any]:
    return {"context": safe_jsonable(context)}


def _debug_module_matches(logger_name: str, module: str) -> bool:
    module = module.strip()
    if not module:
        return False
    if logger_name == module or logger_name.startswith(module + "."):
        return True
    return module in logger_name.split(".")


def log_debug(logger: Logger, msg: str, **context):
    if not _DEBUG_ENABLED:
        return
    if _DEBUG_MODULES and not any(_debug_module_matches(logger.name, m) for m in _DEBUG_MODULES):
        return
    logger.debug(msg, extra=_context(context))


def log_info(logger: Logger, msg: str, **context):
    logger.info(msg, extra=_context(context))


def log_error(logger: Logger, msg: str, **context):
    logger.error(msg, extra=_context(context))


def log_exception(logger: Logger, msg: str, **context):
    logger.exception(msg, extra=_context(context))

# ---------------------------------------------------------------------
# Category helpers
# ---------------------------------------------------------------------

def log_data_source(logger: Logger, msg: str, **context):
    """
    Data source health: retries, exhausted retries, gaps in a block log.
    Expected context: position, method, retry_count, backoff_ms, err_type
    """
    logger.warning(msg, extra=_context({**context, "category": CATEGORY_DATA_SOURCE}))


def log_match(logger: Logger, msg: str, **context):
    """
    Condition outcome per tick.
    Expected context: position, matched, fields, elapsed_ms
    """
    logger.info(msg, extra=_context({**context, "category": CATEGORY_MATCH}))


def log_provider(logger: Logger, msg: str, **context):
    """
    Isolated provider failures.
    Expected context: provider, position, err_type, err
    """
    logger.warning(msg, extra=_context({**context, "category": CATEGORY_PROVIDER}))


def log_lifecycle(logger: Logger, msg: str, **context):
    """
    Subscription phase transitions and observe-mode hand-offs.
    Expected context: subscription, phase, mode, position
    """
    logger.info(msg, extra=_context({**context, "category": CATEGORY_LIFECYCLE}))


def log_heartbeat(logger: Logger, msg: str, **context):
    """
    Liveness of long-running subscriptions.
    Expected context: position, head, ticks, matched
    """
    logger.info(msg, extra=_context({**context, "category": CATEGORY_HEARTBEAT}))
