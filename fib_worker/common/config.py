#!/usr/bin/env python3
"""
設定管理モジュール
Configuration management for the Fibonacci worker
"""

import copy
import logging
import os
import re
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG: Dict[str, Any] = {
    'redis': {
        'host': 'localhost',
        'port': 6379,
        'db': 0,
        'socket_connect_timeout': 5.0,
    },
    'worker': {
        'queue_type': 'redis',
        'channel': 'insert',
        'hash_name': 'values',
        'reconnect_interval': 1.0,
        'max_index': 10000,
    },
    'logging': {
        'level': 'INFO',
        'format': '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        'file': {
            'enabled': False,
            'path': 'logs/fib_worker.log',
            'max_size': 10485760,
            'backup_count': 5,
        },
    },
}

# ${VAR:-default}
_ENV_PATTERN = re.compile(r'\$\{([^:}]+)(?::-?([^}]*))?\}')


def default_config_path() -> str:
    """設定ファイルのパスを環境変数から決定"""
    explicit = os.environ.get('FIB_WORKER_CONFIG')
    if explicit:
        return explicit
    home = os.environ.get('FIB_WORKER_HOME', os.getcwd())
    return os.path.join(home, 'config', 'worker.yaml')


class ConfigManager:
    """YAML設定を管理するクラス"""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or default_config_path()
        self._config: Dict[str, Any] = {}
        self.reload()

    def reload(self):
        """設定ファイルを再読み込み"""
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                loaded = yaml.safe_load(f) or {}

            if not isinstance(loaded, dict):
                raise ValueError(f"top-level YAML value must be a mapping, got {type(loaded).__name__}")

            self._config = _merge(DEFAULT_CONFIG, self._expand_env_vars(loaded))
            logger.info(f"Configuration loaded from {self.config_path}")
        except FileNotFoundError:
            logger.warning(f"Config file not found: {self.config_path}, using defaults")
            self._config = copy.deepcopy(DEFAULT_CONFIG)
        except (OSError, ValueError, yaml.YAMLError) as e:
            logger.error(f"Error loading config: {e}, using defaults", exc_info=True)
            self._config = copy.deepcopy(DEFAULT_CONFIG)

    def _expand_env_vars(self, config: Any) -> Any:
        """設定値内の環境変数を展開"""
        if isinstance(config, dict):
            return {k: self._expand_env_vars(v) for k, v in config.items()}
        elif isinstance(config, list):
            return [self._expand_env_vars(item) for item in config]
        elif isinstance(config, str):
            def replacer(match):
                var_name = match.group(1)
                default_value = match.group(2) or ''
                return os.environ.get(var_name, default_value)

            expanded = _ENV_PATTERN.sub(replacer, config)
            # 値全体が置換された場合はYAMLの型に合わせる（ポート番号など）
            if expanded != config and _ENV_PATTERN.fullmatch(config):
                return yaml.safe_load(expanded) if expanded else None
            return expanded
        else:
            return config

    def get(self, key_path: str, default: Any = None) -> Any:
        """
        ドット記法でネストされた設定値を取得

        Args:
            key_path: 設定キーのパス（例: "redis.port"）
            default: キーが存在しない場合のデフォルト値
        """
        value = self._config
        try:
            for key in key_path.split('.'):
                value = value[key]
            return value
        except (KeyError, TypeError):
            return default

    def get_redis_config(self) -> Dict[str, Any]:
        """Redis接続設定を取得"""
        return dict(self.get('redis', {}))

    def get_worker_config(self) -> Dict[str, Any]:
        """ワーカー設定を取得"""
        return dict(self.get('worker', {}))

    def get_logging_config(self) -> Dict[str, Any]:
        """ロギング設定を取得"""
        return self.get('logging', {})

    def update_runtime(self, key_path: str, value: Any):
        """
        実行時に設定を一時的に更新（ファイルには保存しない）

        Args:
            key_path: 設定キーのパス
            value: 新しい値
        """
        keys = key_path.split('.')
        config = self._config

        for key in keys[:-1]:
            if not isinstance(config.get(key), dict):
                config[key] = {}
            config = config[key]

        config[keys[-1]] = value
        logger.info(f"Updated runtime config: {key_path} = {value}")

    @property
    def config(self) -> Dict[str, Any]:
        """設定全体のコピーを取得"""
        return copy.deepcopy(self._config)


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def setup_logging(config: ConfigManager, level: Optional[str] = None):
    """設定に基づいてロギングをセットアップ"""
    log_level_name = (level or config.get('logging.level', 'INFO')).upper()
    log_level = getattr(logging, log_level_name, logging.INFO)
    log_format = config.get('logging.format', DEFAULT_CONFIG['logging']['format'])

    handlers = [logging.StreamHandler()]

    if config.get('logging.file.enabled', False):
        log_path = config.get('logging.file.path', 'logs/fib_worker.log')
        log_dir = os.path.dirname(log_path)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)

        handlers.append(RotatingFileHandler(
            log_path,
            maxBytes=config.get('logging.file.max_size', 10485760),
            backupCount=config.get('logging.file.backup_count', 5)
        ))

    for handler in handlers:
        handler.setFormatter(logging.Formatter(log_format))

    logging.basicConfig(
        level=log_level,
        format=log_format,
        handlers=handlers,
        force=True
    )

    logger.info("Logging configured successfully")
