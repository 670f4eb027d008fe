"""
Configuration module for cl-fee-tiers

Contains the Config dataclass that holds all tunable parameters
for the fee tier plugin, plus ConfigSnapshot: an immutable copy taken
at the start of every sync cycle so a cycle never sees a torn config.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .database import Database


DEFAULT_RATE_URL = "https://mempool.space/api/v1/historical-price"

# Type mapping for config fields (for option parsing)
CONFIG_FIELD_TYPES: Dict[str, type] = {
    'channel_refresh_interval': int,
    'sync_min_interval': int,
    'sync_page_size': int,
    'max_retries': int,
    'retry_delay_seconds': float,
    'resume_offset_ms': int,
    'rate_lookup_offset_ms': int,
    'http_timeout_seconds': int,
    'dry_run': bool,
}

# Range constraints for numeric fields
CONFIG_FIELD_RANGES: Dict[str, tuple] = {
    'channel_refresh_interval': (1, 3600),
    'sync_min_interval': (0, 86400),
    'sync_page_size': (1, 1000),
    'max_retries': (1, 20),
    'retry_delay_seconds': (0.0, 60.0),
    'resume_offset_ms': (0, 60000),
    'rate_lookup_offset_ms': (0, 3600000),
    'http_timeout_seconds': (1, 120),
}

# Keys that only make sense at startup
IMMUTABLE_CONFIG_KEYS: FrozenSet[str] = frozenset({
    'db_path',
    'rate_url',
    'slack_webhook_url',
    'aml_url',
    'http_timeout_seconds',
})

# Runtime-settable keys that are not plain scalars
RUNTIME_LIST_KEYS: FrozenSet[str] = frozenset({
    'node_whitelist',
})


def parse_node_list(value: Optional[str]) -> FrozenSet[str]:
    """Parse a comma separated list of node public keys."""
    if not value:
        return frozenset()
    return frozenset(part.strip().lower() for part in value.split(',') if part.strip())


@dataclass
class Config:
    """
    Configuration container for the fee tier plugin.

    All values can be set via plugin options at startup.
    """

    # Database path
    db_path: str = '~/.lightning/fee_tiers.db'

    # Timer intervals (in seconds)
    channel_refresh_interval: int = 5     # Channel directory refresh
    sync_min_interval: int = 30           # Min gap between notification-driven syncs

    # Forward sync
    sync_page_size: int = 100
    resume_offset_ms: int = 0             # Gap after the latest stored event when no cursor is stored
    rate_lookup_offset_ms: int = 5000     # Price the event slightly before it settled

    # Retry policy for transient collaborator failures
    max_retries: int = 3
    retry_delay_seconds: float = 2.0

    # Operator-controlled nodes whose tier is fixed externally
    node_whitelist: FrozenSet[str] = field(default_factory=frozenset)

    # Collaborators
    rate_url: str = DEFAULT_RATE_URL
    slack_webhook_url: str = ''
    aml_url: str = ''
    http_timeout_seconds: int = 10

    # Safety flags
    dry_run: bool = False          # If True, log fee changes but do not execute

    # Bumped on every runtime override
    _version: int = field(default=0, repr=False)

    def is_whitelisted(self, node_id: str) -> bool:
        return bool(node_id) and node_id.lower() in self.node_whitelist

    def validate(self) -> List[str]:
        """Return a list of range violations (empty when valid)."""
        problems = []
        for key, (min_val, max_val) in CONFIG_FIELD_RANGES.items():
            value = getattr(self, key)
            if not (min_val <= value <= max_val):
                problems.append(f"{key}={value} out of range [{min_val}, {max_val}]")
        return problems

    def reset_invalid(self) -> List[str]:
        """Replace out-of-range values by their defaults; return what was reset."""
        defaults = Config()
        problems = self.validate()
        for key, (min_val, max_val) in CONFIG_FIELD_RANGES.items():
            if not (min_val <= getattr(self, key) <= max_val):
                setattr(self, key, getattr(defaults, key))
        return problems

    @classmethod
    def from_options(cls, options: Dict[str, Any]) -> 'Config':
        """Build a Config from `fee-tiers-*` plugin options."""
        return cls(
            db_path=options['fee-tiers-db-path'],
            channel_refresh_interval=int(options['fee-tiers-channel-refresh-interval']),
            sync_min_interval=int(options['fee-tiers-sync-min-interval']),
            sync_page_size=int(options['fee-tiers-sync-page-size']),
            max_retries=int(options['fee-tiers-max-retries']),
            retry_delay_seconds=float(options['fee-tiers-retry-delay']),
            resume_offset_ms=int(options['fee-tiers-resume-offset-ms']),
            node_whitelist=parse_node_list(options['fee-tiers-node-whitelist']),
            rate_url=options['fee-tiers-rate-url'],
            slack_webhook_url=options['fee-tiers-slack-webhook'],
            aml_url=options['fee-tiers-aml-url'],
            http_timeout_seconds=int(options['fee-tiers-http-timeout']),
            dry_run=str(options['fee-tiers-dry-run']).lower() == 'true',
        )

    def _coerce(self, key: str, value: str) -> Any:
        if key in RUNTIME_LIST_KEYS:
            return parse_node_list(value)
        field_type = CONFIG_FIELD_TYPES.get(key, str)
        if field_type == bool:
            return value.lower() in ('true', '1', 'yes', 'on')
        return field_type(value)

    def load_overrides(self, database: 'Database') -> List[str]:
        """
        Apply runtime overrides persisted by update_runtime().

        Invalid or no longer mutable overrides are skipped. Returns the keys
        that were applied.
        """
        applied = []
        for key, value, version in database.get_all_config_overrides():
            if key in IMMUTABLE_CONFIG_KEYS or not hasattr(self, key):
                continue
            try:
                typed_value = self._coerce(key, value)
            except (ValueError, TypeError):
                continue
            if key in CONFIG_FIELD_RANGES:
                min_val, max_val = CONFIG_FIELD_RANGES[key]
                if not (min_val <= typed_value <= max_val):
                    continue
            setattr(self, key, typed_value)
            self._version = max(self._version, version)
            applied.append(key)
        return applied

    def update_runtime(self, database: 'Database', key: str, value: str) -> Dict[str, Any]:
        """
        Validate, persist, then apply a runtime config change.

        Returns:
            Dict with status, old_value, new_value, version (or error)
        """
        if key in IMMUTABLE_CONFIG_KEYS:
            return {"error": f"Key '{key}' cannot be changed at runtime"}

        if key not in CONFIG_FIELD_TYPES and key not in RUNTIME_LIST_KEYS:
            return {"error": f"Unknown config key: {key}"}

        try:
            typed_value = self._coerce(key, value)
        except (ValueError, TypeError) as e:
            field_type = CONFIG_FIELD_TYPES.get(key, str)
            return {"error": f"Invalid value for {key} (expected {field_type.__name__}): {e}"}

        if key in CONFIG_FIELD_RANGES:
            min_val, max_val = CONFIG_FIELD_RANGES[key]
            if not (min_val <= typed_value <= max_val):
                return {"error": f"Value {typed_value} out of range [{min_val}, {max_val}] for {key}"}

        old_value = getattr(self, key)
        new_version = database.set_config_override(key, value)
        setattr(self, key, typed_value)
        self._version = new_version

        if isinstance(old_value, frozenset):
            old_value = sorted(old_value)
        if isinstance(typed_value, frozenset):
            typed_value = sorted(typed_value)
        return {
            "status": "success",
            "key": key,
            "old_value": old_value,
            "new_value": typed_value,
            "version": new_version
        }

    def snapshot(self) -> 'ConfigSnapshot':
        """
        Create an immutable snapshot for cycle execution.

        Sync cycles capture a snapshot at cycle start and use only that
        snapshot for the duration of the cycle.
        """
        return ConfigSnapshot.from_config(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "db_path": self.db_path,
            "channel_refresh_interval": self.channel_refresh_interval,
            "sync_min_interval": self.sync_min_interval,
            "sync_page_size": self.sync_page_size,
            "max_retries": self.max_retries,
            "retry_delay_seconds": self.retry_delay_seconds,
            "resume_offset_ms": self.resume_offset_ms,
            "rate_lookup_offset_ms": self.rate_lookup_offset_ms,
            "node_whitelist": sorted(self.node_whitelist),
            "rate_url": self.rate_url,
            "slack_enabled": bool(self.slack_webhook_url),
            "aml_enabled": bool(self.aml_url),
            "http_timeout_seconds": self.http_timeout_seconds,
            "dry_run": self.dry_run,
            "version": self._version,
        }


@dataclass(frozen=True)
class ConfigSnapshot:
    """
    Immutable configuration snapshot for thread-safe cycle execution.

    Usage:
        def sync_forward_events(self):
            cfg = self.config.snapshot()  # Immutable for this cycle
            # All logic uses cfg, never self.config directly
    """
    sync_page_size: int
    resume_offset_ms: int
    rate_lookup_offset_ms: int
    max_retries: int
    retry_delay_seconds: float
    node_whitelist: FrozenSet[str]
    dry_run: bool

    def is_whitelisted(self, node_id: str) -> bool:
        return bool(node_id) and node_id.lower() in self.node_whitelist

    @classmethod
    def from_config(cls, config: Config) -> 'ConfigSnapshot':
        """Create snapshot from mutable Config."""
        return cls(
            sync_page_size=config.sync_page_size,
            resume_offset_ms=config.resume_offset_ms,
            rate_lookup_offset_ms=config.rate_lookup_offset_ms,
            max_retries=config.max_retries,
            retry_delay_seconds=config.retry_delay_seconds,
            node_whitelist=frozenset(config.node_whitelist),
            dry_run=config.dry_run,
        )
