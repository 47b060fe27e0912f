from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional


logger = logging.getLogger("chatstream.web_search")

SEARCH_TOOL: Dict[str, Any] = {"googleSearch": {}}

_TRUTHY = {"1", "true", "yes", "y", "on"}
_FALSY = {"0", "false", "no", "n", "off"}


def env_flag(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    v = str(value).strip().lower()
    if v in _TRUTHY:
        return True
    if v in _FALSY:
        return False
    return default


def strip_outer_quotes(value: Optional[str]) -> str:
    v = str(value or "").strip()
    if len(v) >= 2 and v[0] == v[-1] and v[0] in ("'", '"'):
        return v[1:-1].strip()
    return v


@dataclass(frozen=True)
class WebSearchConfig:
    enabled: bool
    available: bool
    cookie: str = ""

    @classmethod
    def from_cookies(cls, cookies: Mapping[str, str], env: Optional[Mapping[str, str]] = None) -> "WebSearchConfig":
        env = env if env is not None else os.environ
        available = env_flag(env.get("WEB_SEARCH_ENABLED"), False)
        cookie_web = cookies.get("webSearchEnabled") or cookies.get("webSearch") or ""
        if cookies.get("alwaysSearch") == "1":
            enabled = available
        elif cookie_web == "1":
            enabled = True
        elif cookie_web == "0":
            enabled = False
        else:
            enabled = available
        return cls(enabled=enabled, available=available, cookie=cookie_web if cookie_web in ("0", "1") else "")

    def tools(self) -> List[Dict[str, Any]]:
        return [dict(SEARCH_TOOL)] if self.enabled and self.available else []

    def to_meta(self) -> Dict[str, Any]:
        return {"enabled": self.enabled, "available": self.available, "cookie": self.cookie}


def safety_settings_from_env(env: Optional[Mapping[str, str]] = None) -> List[Dict[str, Any]]:
    """Parse ``GEMINI_SAFETY_SETTINGS_JSON``; anything but a non-empty list is ignored."""

    env = env if env is not None else os.environ
    raw = (env.get("GEMINI_SAFETY_SETTINGS_JSON") or "").strip()
    if not raw:
        return []
    try:
        parsed = json.loads(strip_outer_quotes(raw))
    except ValueError:
        logger.warning("safety_settings_invalid_json")
        return []
    if isinstance(parsed, list) and parsed:
        return [item for item in parsed if isinstance(item, dict)]
    return []
