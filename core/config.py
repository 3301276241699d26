"""
core/config.py — YAML 配置加载

• 配置文件路径来自环境变量 CONFIG_FILE，默认 ./config.yaml
• 支持 ${ENV_NAME:-default} 形式的环境变量替换
• cfg.get("billing.retention_days", 90) 点号路径读取
• cfg.save_config() 将当前 cfg.config 写回文件
"""

import os
import re
from typing import Any

import yaml

VERSION = "1.4.0"

_ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")


def _expand_env(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    if isinstance(value, str):
        return _ENV_PATTERN.sub(lambda m: os.getenv(m.group(1), m.group(2) or ""), value)
    return value


class Config:
    def __init__(self, config_path: str = None):
        self.config_path = config_path or os.getenv("CONFIG_FILE", "./config.yaml")
        self.config = {}
        self.reload()

    def reload(self):
        if not os.path.exists(self.config_path):
            self.config = {}
            return self.config
        with open(self.config_path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
        self.config = _expand_env(raw) if isinstance(raw, dict) else {}
        return self.config

    def get(self, key: str, default: Any = None) -> Any:
        node = self.config
        for part in str(key or "").split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        if node is None or node == "":
            return default
        return node

    def set(self, key: str, value: Any) -> None:
        parts = str(key or "").split(".")
        if not isinstance(self.config, dict):
            self.config = {}
        node = self.config
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = value

    def save_config(self):
        directory = os.path.dirname(os.path.abspath(self.config_path))
        os.makedirs(directory, exist_ok=True)
        with open(self.config_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(self.config, f, allow_unicode=True, sort_keys=False)


cfg = Config()

API_BASE = str(cfg.get("server.api_base", "/api/v1"))
