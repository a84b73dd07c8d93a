"""Engine State Management Service

Holds the tunable configuration of the selection / feedback / harmonization
loop together with lightweight analytics counters.
"""

import logging
import threading
from datetime import datetime
from typing import Dict, Any

logger = logging.getLogger(__name__)

# Numeric settings and their allowed closed ranges
NUMERIC_RANGES = {
    'alpha': (0.0, 10.0),
    'beta': (0.0, 10.0),
    'gamma': (0.0, 10.0),
    'delta': (0.0, 10.0),
    'top_k': (1, 100),
    'temperature': (1e-6, 100.0),
    'base_eta': (0.0, 1.0),
    'cas_max_attempts': (1, 10),
    'harmonization_window': (2, 1000),
    'harmonization_interval_hours': (0.0, 24.0 * 365),
    'elevated_threshold': (0.0, 1.0),
    'critical_threshold': (0.0, 1.0),
    'embedding_timeout': (0.1, 60.0),
    'self_report_floor': (0.0, 1.0),
    'negative_feedback_threshold': (-1.0, 0.0),
}

INTEGER_KEYS = {'top_k', 'cas_max_attempts', 'harmonization_window'}

# Non-numeric settings and the types they accept
TYPED_KEYS = {
    'embedding_url': (str, type(None)),
    'embedding_model': (str,),
    'enable_analytics': (bool,),
}


def _default_config() -> Dict[str, Any]:
    return {
        # Selection scoring
        'alpha': 0.4,  # Pattern match weight
        'beta': 0.3,  # Resonance contribution weight
        'gamma': 0.2,  # Learning weight prior
        'delta': 0.1,  # Fatigue penalty weight
        'top_k': 5,  # Candidates kept for softmax sampling
        'temperature': 0.2,  # Softmax temperature (low = greedy)
        # Learning
        'base_eta': 0.05,  # Base learning rate for weight updates
        'cas_max_attempts': 3,  # Compare-and-swap attempts before surfacing a conflict
        'self_report_floor': 0.7,  # Minimum confidence coverage when a self-report is present
        'negative_feedback_threshold': -0.3,  # Fulfillment below this recommends harmonization
        # Harmonization
        'harmonization_window': 50,  # Selection events inspected per cycle
        'harmonization_interval_hours': 24.0,  # Guard between unforced cycles
        'elevated_threshold': 0.6,
        'critical_threshold': 0.8,
        # Embedding
        'embedding_method': 'none',
        'embedding_url': None,
        'embedding_model': 'all-MiniLM-L6-v2',
        'embedding_timeout': 5.0,  # Seconds; embedding requests are never retried
        'enable_analytics': True,
    }


def _empty_analytics() -> Dict[str, Any]:
    return {
        'selections': 0,
        'feedback_submissions': 0,
        'harmonization_runs': 0,
        'harmonization_skipped': 0,
        'concurrency_conflicts': 0,
        'degraded_embeddings': 0,
        'event_log_failures': 0,
        'error_count': 0,
        'last_activity_timestamp': None,
    }


class EngineState:
    """Current configuration and analytics for the engine."""

    def __init__(self, config: Dict[str, Any] | None = None):
        self.config = _default_config()
        if config and not self.update_config(config):
            raise ValueError(f"Invalid engine configuration: {config}")
        self._lock = threading.Lock()
        self.analytics = _empty_analytics()
        logger.info(f"Engine state initialized with configuration: {self.config}")

    def update_config(self, new_config: Dict[str, Any]) -> bool:
        """Update configuration with validation.

        Args:
            new_config: Dictionary of new configuration values

        Returns:
            bool: True if update successful, False otherwise
        """
        valid_embedding = ['sentence_transformer', 'http', 'hashing', 'none']
        defaults = _default_config()

        for key, value in new_config.items():
            if key not in defaults:
                logger.error(f"Unknown configuration key: {key}")
                return False
            if key == 'embedding_method' and value not in valid_embedding:
                logger.error(f"Invalid embedding method: {value}")
                return False
            if key in TYPED_KEYS and not isinstance(value, TYPED_KEYS[key]):
                logger.error(f"Invalid value for {key}: {value!r}")
                return False
            if key == 'embedding_model' and not value.strip():
                logger.error("embedding_model must not be empty")
                return False
            if key in NUMERIC_RANGES:
                low, high = NUMERIC_RANGES[key]
                if isinstance(value, bool) or not isinstance(value, (int, float)) or not low <= value <= high:
                    logger.error(f"Invalid value for {key}: {value} (expected {low}..{high})")
                    return False
                if key in INTEGER_KEYS and int(value) != value:
                    logger.error(f"Invalid value for {key}: {value} (expected an integer)")
                    return False

        merged = {**self.config, **new_config}
        if merged['elevated_threshold'] > merged['critical_threshold']:
            logger.error("elevated_threshold must not exceed critical_threshold")
            return False

        for key in INTEGER_KEYS & set(new_config):
            new_config = {**new_config, key: int(new_config[key])}
        self.config.update(new_config)
        logger.info(f"Configuration updated: {new_config}")
        return True

    def get_config(self) -> Dict[str, Any]:
        return self.config.copy()

    def update_analytics(self, operation: str, **kwargs):
        """Increment an analytics counter.

        Args:
            operation: Counter name ('selections', 'error_count', ...)
        """
        if not self.config.get('enable_analytics', True):
            return
        # Request handlers run on worker threads
        with self._lock:
            if operation in self.analytics and operation != 'last_activity_timestamp':
                self.analytics[operation] += kwargs.get('count', 1)
            self.analytics['last_activity_timestamp'] = str(datetime.now())

    def get_analytics(self) -> Dict[str, Any]:
        with self._lock:
            return self.analytics.copy()

    def reset_analytics(self):
        with self._lock:
            self.analytics = _empty_analytics()
        logger.info("Analytics counters reset")

    def get_system_stats(self) -> Dict[str, Any]:
        """Analytics plus a simple health score based on error and conflict rates."""
        analytics = self.get_analytics()
        total = analytics['selections'] + analytics['feedback_submissions'] + analytics['harmonization_runs']
        health_score = 1.0
        if total > 0:
            failure_rate = (analytics['error_count'] + analytics['concurrency_conflicts']) / total
            health_score -= min(failure_rate * 2, 0.5)
        return {
            'config': self.config.copy(),
            'analytics': analytics,
            'health_score': max(0.0, health_score),
        }


# Global state instance
engine_state = EngineState()

