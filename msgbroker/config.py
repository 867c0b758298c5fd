"""
Configuration management supporting both file-based and environment variable configurations.
"""
import os
import json
import logging
from typing import Any, Dict, Optional


class Config:
    """Configuration manager with defaults and environment variable support"""
    
    # Default configuration values
    DEFAULTS = {
        # Work queue settings
        'queue': {
            'visibility_timeout': 30,   # seconds
            'default_priority': 0,
            'max_retries': 3,
            'max_depth': 0,             # 0 means unbounded
            'max_body_size': 1024 * 1024,  # 1MB
            'acked_history': 10000,     # acked ids remembered for state lookups
        },
        
        # Expiry sweeper
        'sweeper': {
            'interval': 1.0,            # seconds
        },
        
        # Publish/subscribe settings
        'pubsub': {
            'max_retries': 3,
            'retry_base_delay': 0.1,    # seconds
            'retry_max_delay': 5.0,     # seconds
            'max_workers': 8,
            'max_pending_deliveries': 0,  # 0 means unbounded
            'failure_history': 100,
        },
        
        # Logging
        'logging': {
            'level': 'INFO',
            'format': '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        }
    }
    
    ENV_MAPPINGS = {
        'MB_VISIBILITY_TIMEOUT': 'queue.visibility_timeout',
        'MB_QUEUE_MAX_RETRIES': 'queue.max_retries',
        'MB_QUEUE_MAX_DEPTH': 'queue.max_depth',
        'MB_SWEEP_INTERVAL': 'sweeper.interval',
        'MB_PUBSUB_MAX_RETRIES': 'pubsub.max_retries',
        'MB_PUBSUB_MAX_WORKERS': 'pubsub.max_workers',
        'MB_RETRY_BASE_DELAY': 'pubsub.retry_base_delay',
        'MB_LOG_LEVEL': 'logging.level',
    }
    
    def __init__(self, config_file: Optional[str] = None):
        self._config = self._deep_copy(self.DEFAULTS)
        
        # Load from file if provided
        if config_file and os.path.exists(config_file):
            self._load_from_file(config_file)
        
        # Override with environment variables
        self._load_from_env()
    
    def get(self, key_path: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation.
        Example: config.get('queue.visibility_timeout') returns the timeout in seconds
        """
        keys = key_path.split('.')
        value = self._config
        
        try:
            for key in keys:
                value = value[key]
            return value
        except (KeyError, TypeError):
            return default
    
    def set(self, key_path: str, value: Any) -> None:
        """Set configuration value using dot notation"""
        keys = key_path.split('.')
        config = self._config
        
        for key in keys[:-1]:
            if key not in config:
                config[key] = {}
            config = config[key]
        
        config[keys[-1]] = value
    
    def _load_from_file(self, config_file: str) -> None:
        """Load configuration from JSON file"""
        try:
            with open(config_file, 'r') as f:
                file_config = json.load(f)
            self._merge_config(self._config, file_config)
        except (OSError, ValueError) as e:
            logging.warning(f"Failed to load config file {config_file}: {e}")
    
    def _load_from_env(self) -> None:
        """Load configuration from environment variables"""
        for env_var, config_key in self.ENV_MAPPINGS.items():
            env_value = os.getenv(env_var)
            if env_value is not None:
                self.set(config_key, self._convert_env_value(env_value))
    
    def _convert_env_value(self, value: str) -> Any:
        """Convert environment variable string to appropriate type"""
        try:
            return int(value)
        except ValueError:
            pass
        
        try:
            return float(value)
        except ValueError:
            pass
        
        if value.lower() in ('true', 'yes', 'on'):
            return True
        elif value.lower() in ('false', 'no', 'off'):
            return False
        
        return value
    
    def _merge_config(self, base: Dict, override: Dict) -> None:
        """Recursively merge configuration dictionaries"""
        for key, value in override.items():
            if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                self._merge_config(base[key], value)
            else:
                base[key] = value
    
    def _deep_copy(self, obj: Any) -> Any:
        if isinstance(obj, dict):
            return {k: self._deep_copy(v) for k, v in obj.items()}
        elif isinstance(obj, list):
            return [self._deep_copy(item) for item in obj]
        else:
            return obj
    
    def save_to_file(self, config_file: str) -> None:
        """Save current configuration to file"""
        try:
            with open(config_file, 'w') as f:
                json.dump(self._config, f, indent=2)
        except OSError as e:
            logging.error(f"Failed to save config to {config_file}: {e}")
    
    def __str__(self) -> str:
        return json.dumps(self._config, indent=2)


# Global configuration instance
_config_instance: Optional[Config] = None

def get_config() -> Config:
    """Get global configuration instance"""
    global _config_instance
    if _config_instance is None:
        config_file = os.getenv('MB_CONFIG_FILE', 'config/broker.json')
        _config_instance = Config(config_file)
    return _config_instance

def initialize_config(config_file: Optional[str] = None) -> Config:
    """Initialize global configuration"""
    global _config_instance
    _config_instance = Config(config_file)
    return _config_instance
