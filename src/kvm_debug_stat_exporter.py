#!/usr/bin/env python3

"""
KVM Debug Stat Exporter

Description:
---------------------

Exposes the counters of the KVM debugfs statistics tree as Prometheus gauges:
- Bounded, depth-limited walk of the kvm debug directory
- Per-VM labels resolved from a VM map (debug dir anchor -> VM name)
- Per-vCPU counters with a dedicated metric namespace
- Hot reload of the VM map on file modification, lock-free for scrapes
- Health check endpoint and systemd integration

Usage:
---------------------
1. Create a YAML configuration file in the same directory as the script
   (or point KVM_DEBUG_STAT_EXPORTER_CONFIG at one)
2. Write the VM map (default /etc/vm.yaml)
3. Run as root, debugfs must be mounted
4. Monitor metrics at http://localhost:9177/metrics
5. Check service health at http://localhost:9178/health

Configuration:
---------------------

exporter:
    metrics_port: 9177  # Prometheus metrics port
    health_port: 9178   # Health check port
    collector:
        kvm_debug_dir: /sys/kernel/debug/kvm  # Scrape root
        depth: 2                              # Max directory depth below the root
        vm_map_path: /etc/vm.yaml             # VM map, reloaded on change
        failure_threshold: 5                  # Failed scrapes before unhealthy
    logging:
        level: "INFO"
        file_level: "DEBUG"
        console_level: "INFO"
        journal_level: "WARNING"
        max_bytes: 10485760
        backup_count: 3
        format: "%(asctime)s [%(process)d] [%(threadName)s] [%(name)s.%(funcName)s] [%(levelname)s] %(message)s"
        date_format: "%Y-%m-%d %H:%M:%S"

# Note: exporter section changes require service restart

VM map:
---------------------

vm_infos:
    vm1:
        pid: 1234
        kvm_debug_dir: "1234-12"   # Directory name under the kvm debug dir

Metrics:
---------------------
kvm_stat_<file>_count{domain="<vm>|global"}
kvm_stat_vcpu_<file>_count{domain="<vm>", vcpu="<vcpu dir>"}

Files directly in the kvm debug dir are labelled domain="global". Files in
a VM directory get the VM name from the map. Files one level further down
(vCPU directories) also get the vcpu label; hyphens in their names become
underscores.

Dependencies:
---------------------
- Python 3.11+
- prometheus_client
- pyyaml
- watchdog
- cysystemd (for systemd integration)

Notes:
---------------------
- All timestamps are in UTC
- A file that cannot be labelled or parsed is skipped, the scrape continues
- A directory that cannot be listed aborts the scrape (reported through
  kvm_stat_scrape_success)
- A VM map that fails to reload leaves the previous map active
"""

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Imports
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

# Standard library imports
import asyncio
import itertools
import json
import logging
import os
import re
import signal
import socket
import sys
import threading
import time
from copy import deepcopy
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path
from types import MappingProxyType
from typing import (
    Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple, Union
)
from wsgiref.simple_server import make_server

# Third party imports
from prometheus_client import REGISTRY, start_http_server
from prometheus_client.core import GaugeMetricFamily
from cysystemd.daemon import notify, Notification
from cysystemd import journal
from watchdog.events import (
    EVENT_TYPE_CREATED, EVENT_TYPE_MODIFIED, EVENT_TYPE_MOVED,
    FileSystemEvent, FileSystemEventHandler
)
from watchdog.observers import Observer
import yaml

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Core Exceptions
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class KvmStatError(Exception):
    """Base class for exporter errors."""
    pass

class ConfigError(KvmStatError):
    """Error reading or validating a configuration file."""
    pass

class ConfigReadError(ConfigError):
    """VM map file could not be read."""
    pass

class ConfigParseError(ConfigError):
    """VM map file is not a valid mapping of VM entries."""
    pass

class ExporterConfigurationError(ConfigError):
    """Error in the exporter section of the program configuration."""
    pass

class DebugDirError(KvmStatError):
    """KVM debug directory is missing or not readable."""
    pass

class WalkError(KvmStatError):
    """Filesystem error while walking the debug tree."""

    def __init__(self, path: str, cause: OSError):
        super().__init__(f"walk failed at {path}: {cause}")
        self.path = path
        self.cause = cause

class ResolutionError(KvmStatError):
    """Directory could not be resolved to labels."""
    pass

class InvalidPathError(ResolutionError):
    """Directory is not the scrape root or below it."""
    pass

class DepthExceededError(ResolutionError):
    """Directory is deeper than the resolvable layout."""
    pass

class UnknownAnchorError(ResolutionError):
    """Anchor directory has no VM in the active map."""

    def __init__(self, anchor: str):
        super().__init__(f"pid {anchor} to vm failed: anchor not in VM map")
        self.anchor = anchor

class ValueParseError(KvmStatError):
    """Counter file content is not a base-10 integer."""
    pass

class ReloadError(KvmStatError):
    """VM map reload failed, the previous map stays active."""
    pass

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Program Source and Configuration
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass(frozen=True)
class ProgramSource:
    """Program source and derived file configurations."""
    script_path: Path = field(default_factory=lambda: Path(sys.argv[0]).resolve())

    CONFIG_ENV_VAR = 'KVM_DEBUG_STAT_EXPORTER_CONFIG'

    @property
    def script_dir(self) -> Path:
        """Directory containing the script."""
        return self.script_path.parent

    @property
    def base_name(self) -> str:
        """Base name without extension."""
        return self.script_path.stem

    @property
    def logger_name(self) -> str:
        """Logger name derived from script name."""
        return self.base_name

    @property
    def config_path(self) -> Path:
        """Path to the exporter config file, which may not exist."""
        override = os.getenv(self.CONFIG_ENV_VAR)
        if override:
            return Path(override)
        return self.script_dir / f"{self.base_name}.yml"

    @property
    def log_path(self) -> Path:
        """Full path to log file."""
        path = self.script_dir / f"{self.base_name}.log"

        if os.access(path, os.W_OK):
            return path
        if not path.exists() and os.access(path.parent, os.W_OK):
            return path

        raise PermissionError(
            f"No writable log file at {path}"
        )

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ProgramConfig:
    """Exporter configuration with defaults and validation.

    Only the exporter section lives here. It is read once at startup; the
    VM map has its own loader and hot reload.
    """

    DEFAULT_METRICS_PORT = 9177
    DEFAULT_HEALTH_PORT = 9178
    DEFAULT_KVM_DEBUG_DIR = '/sys/kernel/debug/kvm'
    DEFAULT_DEPTH = 2
    DEFAULT_VM_MAP_PATH = '/etc/vm.yaml'
    DEFAULT_FAILURE_THRESHOLD = 5

    # Logging defaults
    DEFAULT_LOG_LEVEL = 'INFO'
    DEFAULT_LOG_FILE_LEVEL = 'DEBUG'
    DEFAULT_LOG_CONSOLE_LEVEL = 'INFO'
    DEFAULT_LOG_JOURNAL_LEVEL = 'WARNING'
    DEFAULT_LOG_MAX_BYTES = 10485760  # 10MB
    DEFAULT_LOG_BACKUP_COUNT = 3
    DEFAULT_LOG_FORMAT = '%(asctime)s [%(process)d] [%(threadName)s] [%(name)s.%(funcName)s] [%(levelname)s] %(message)s'
    DEFAULT_LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

    def __init__(self, source: ProgramSource):
        """Initialize configuration manager."""
        self._source = source
        self._config = {'exporter': self._get_exporter_defaults()}
        self._loaded_from: Optional[Path] = None
        self._running_under_systemd = bool(os.getenv('INVOCATION_ID'))
        self._start_time = self.now_utc()
        self.logger = None

    def _log_message(self, level: str, message: str) -> None:
        """Safe logging wrapper."""
        if self.logger:
            getattr(self.logger, level)(message)

    def _get_exporter_defaults(self) -> Dict[str, Any]:
        """Get default exporter configuration."""
        return {
            'metrics_port': self.DEFAULT_METRICS_PORT,
            'health_port': self.DEFAULT_HEALTH_PORT,
            'collector': {
                'kvm_debug_dir': self.DEFAULT_KVM_DEBUG_DIR,
                'depth': self.DEFAULT_DEPTH,
                'vm_map_path': self.DEFAULT_VM_MAP_PATH,
                'failure_threshold': self.DEFAULT_FAILURE_THRESHOLD
            },
            'logging': {
                'level': self.DEFAULT_LOG_LEVEL,
                'file_level': self.DEFAULT_LOG_FILE_LEVEL,
                'console_level': self.DEFAULT_LOG_CONSOLE_LEVEL,
                'journal_level': self.DEFAULT_LOG_JOURNAL_LEVEL,
                'max_bytes': self.DEFAULT_LOG_MAX_BYTES,
                'backup_count': self.DEFAULT_LOG_BACKUP_COUNT,
                'format': self.DEFAULT_LOG_FORMAT,
                'date_format': self.DEFAULT_LOG_DATE_FORMAT
            }
        }

    def load(self) -> None:
        """Load the config file over the defaults.

        A missing file is not an error, the defaults apply.
        """
        path = self._source.config_path
        new_config = {'exporter': self._get_exporter_defaults()}

        if not path.exists():
            self._log_message('info', f"No config file at {path}, using defaults")
            self._config = new_config
            self._loaded_from = None
            return

        try:
            with open(path) as f:
                file_config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ExporterConfigurationError(f"Failed to load config file {path}: {e}")

        if not isinstance(file_config, dict):
            raise ExporterConfigurationError(f"Config file {path} must contain a mapping")

        if 'exporter' in file_config:
            self._validate_exporter_section(file_config['exporter'])
            new_config['exporter'] = self._merge_with_defaults(
                new_config['exporter'],
                file_config['exporter'] or {}
            )

        self._config = new_config
        self._loaded_from = path
        self._log_message('info', f"Configuration loaded from {path}")

    def _merge_with_defaults(self, defaults: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Simple merge of override values with defaults."""
        result = deepcopy(defaults)
        for key, value in override.items():
            if value is None:
                continue
            if isinstance(value, dict) and key in result and isinstance(result[key], dict):
                result[key] = self._merge_with_defaults(result[key], value)
            else:
                result[key] = deepcopy(value)
        return result

    @staticmethod
    def _is_int(value: Any) -> bool:
        return isinstance(value, int) and not isinstance(value, bool)

    def _validate_exporter_section(self, config: Optional[Dict[str, Any]]) -> None:
        """Basic validation of exporter configuration."""
        if not config:
            return

        if not isinstance(config, dict):
            raise ExporterConfigurationError("Exporter section must be a dictionary")

        for key in ('metrics_port', 'health_port'):
            if key in config:
                port = config[key]
                if not self._is_int(port) or port < 1 or port > 65535:
                    raise ExporterConfigurationError(f"Invalid {key} {port}")

        metrics_port = config.get('metrics_port', self.DEFAULT_METRICS_PORT)
        health_port = config.get('health_port', self.DEFAULT_HEALTH_PORT)
        if metrics_port == health_port:
            raise ExporterConfigurationError("metrics_port and health_port must be different")

        collector = config.get('collector') or {}
        if not isinstance(collector, dict):
            raise ExporterConfigurationError("Collector section must be a dictionary")

        if 'depth' in collector:
            depth = collector['depth']
            if not self._is_int(depth) or depth < 0:
                raise ExporterConfigurationError(f"Invalid depth {depth}: must be a non-negative integer")

        if 'failure_threshold' in collector:
            threshold = collector['failure_threshold']
            if not self._is_int(threshold) or threshold < 1:
                raise ExporterConfigurationError(f"Invalid failure_threshold {threshold}")

        for key in ('kvm_debug_dir', 'vm_map_path'):
            if key in collector:
                value = collector[key]
                if not isinstance(value, str) or not value:
                    raise ExporterConfigurationError(f"Invalid {key} {value!r}: must be a non-empty path")

        logging_config = config.get('logging') or {}
        if not isinstance(logging_config, dict):
            raise ExporterConfigurationError("Logging section must be a dictionary")

        known_levels = set(logging.getLevelNamesMapping()) | {'VERBOSE'}
        for key in ('level', 'file_level', 'console_level', 'journal_level'):
            if key in logging_config:
                level = logging_config[key]
                if self._is_int(level) and level >= 0:
                    continue
                if not isinstance(level, str) or level not in known_levels:
                    raise ExporterConfigurationError(f"Invalid logging {key} {level!r}")

    @staticmethod
    def now_utc() -> datetime:
        """Get current UTC datetime."""
        return datetime.now(timezone.utc)

    def get_uptime_seconds(self) -> float:
        """Get service uptime in seconds."""
        return (self.now_utc() - self._start_time).total_seconds()

    @property
    def start_time(self) -> datetime:
        return self._start_time

    @property
    def loaded_from(self) -> Optional[Path]:
        """Config file the settings came from, None when on defaults."""
        return self._loaded_from

    @property
    def running_under_systemd(self) -> bool:
        """Check if running under systemd."""
        return self._running_under_systemd

    @property
    def exporter(self) -> Dict[str, Any]:
        """Get exporter configuration."""
        return self._config['exporter']

    @property
    def collector(self) -> Dict[str, Any]:
        """Get collector configuration."""
        return self.exporter.get('collector', {})

    @property
    def logging(self) -> Dict[str, Any]:
        """Get logging configuration."""
        return self.exporter.get('logging', {})

    @property
    def metrics_port(self) -> int:
        return self.exporter.get('metrics_port', self.DEFAULT_METRICS_PORT)

    @property
    def health_port(self) -> int:
        return self.exporter.get('health_port', self.DEFAULT_HEALTH_PORT)

    @property
    def kvm_debug_dir(self) -> str:
        """Scrape root, normalised."""
        return os.path.normpath(self.collector.get('kvm_debug_dir', self.DEFAULT_KVM_DEBUG_DIR))

    @property
    def depth(self) -> int:
        return self.collector.get('depth', self.DEFAULT_DEPTH)

    @property
    def vm_map_path(self) -> Path:
        return Path(self.collector.get('vm_map_path', self.DEFAULT_VM_MAP_PATH))

    @property
    def failure_threshold(self) -> int:
        return self.collector.get('failure_threshold', self.DEFAULT_FAILURE_THRESHOLD)

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ProgramLogger:
    """Manages logging configuration and setup."""

    # Verbose logging config
    VERBOSE_DEBUG = True
    VERBOSE_LEVEL = 15  # DEBUG 10, INFO 20

    class VerboseLogger(logging.Logger):
        """Enhanced Logger class adding verbose debugging capabilities"""

        def verbose(
            self,
            msg: Union[str, Callable[[], str]],
            *args: Any,
            **kwargs: Any
        ) -> None:
            """Log verbose debug messages with efficient deferred evaluation."""

            if not ProgramLogger.VERBOSE_DEBUG:
                return
            if not self.isEnabledFor(ProgramLogger.VERBOSE_LEVEL):
                return

            # Handle deferred evaluation of expensive computations
            if callable(msg):
                self.log(ProgramLogger.VERBOSE_LEVEL, msg(*args, **kwargs))
            # Handle string formatting
            elif args or kwargs:
                self.log(ProgramLogger.VERBOSE_LEVEL, msg.format(*args, **kwargs))
            # Handle simple strings
            else:
                self.log(ProgramLogger.VERBOSE_LEVEL, msg)

    def __init__(
        self,
        source: ProgramSource,
        config: ProgramConfig
    ):
        """Initialize logging configuration.

        Args:
            source: Program source information
            config: Program configuration
        """

        # Set VerboseLogger as the default logger class
        logging.addLevelName(self.VERBOSE_LEVEL, 'VERBOSE')
        logging.setLoggerClass(self.VerboseLogger)

        self.source = source
        self.config = config
        self._handlers: Dict[str, logging.Handler] = {}

        self._logger = self._setup_logging()

        # Attach logger to config after setup
        self.config.logger = self._logger

    @property
    def logger(self) -> logging.Logger:
        """Get the configured logger instance."""
        return self._logger

    @property
    def handlers(self) -> Dict[str, logging.Handler]:
        """Get dictionary of configured handlers."""
        return self._handlers

    def _setup_logging(self) -> logging.Logger:
        """Set up logging with configuration from config file.

        Creates and configures:
        - Base logger
        - File handler with rotation
        - Console handler
        - Journal handler (if running under systemd)

        Returns:
            Configured logging.Logger instance

        Note:
            The console handler is always installed; an unwritable log
            file only disables the file handler.
        """
        logger = logging.getLogger(self.source.logger_name)
        logger.handlers.clear()

        log_settings = self.config.logging
        logger.setLevel(log_settings['level'])

        formatter = logging.Formatter(
            log_settings['format'],
            log_settings['date_format']
        )

        # Console handler
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(log_settings['console_level'])
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)
        self._handlers['console'] = console_handler

        try:
            # File handler
            file_handler = RotatingFileHandler(
                self.source.log_path,
                maxBytes=log_settings['max_bytes'],
                backupCount=log_settings['backup_count']
            )
            file_handler.setLevel(log_settings['file_level'])
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
            self._handlers['file'] = file_handler
        except OSError as e:
            logger.warning(f"File logging disabled: {e}")

        # Journal handler for systemd
        if self.config.running_under_systemd:
            journal_handler = journal.JournaldLogHandler()
            journal_handler.setLevel(log_settings['journal_level'])
            journal_handler.setFormatter(formatter)
            logger.addHandler(journal_handler)
            self._handlers['journal'] = journal_handler

        return logger

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# VM Map and Label Index
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass(frozen=True)
class VmEntry:
    """One configured virtual machine."""
    name: str
    anchor_id: str
    pid: Optional[str] = None

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass(frozen=True)
class LabelIndex:
    """Immutable anchor -> VM name lookup for one VM map generation.

    Built whole from the entries and never mutated afterwards; a changed VM
    map produces a new LabelIndex. Two entries sharing an anchor are
    rejected at construction.

    Attributes:
        entries: VM entries in file order
        generation: Load counter, 0 for hand-built indexes
        source: File the entries were read from
        loaded_at: Construction time
    """
    entries: Tuple[VmEntry, ...] = ()
    generation: int = 0
    source: Optional[Path] = None
    loaded_at: datetime = field(default_factory=lambda: ProgramConfig.now_utc())

    def __post_init__(self):
        by_anchor: Dict[str, VmEntry] = {}
        names = set()
        for entry in self.entries:
            if entry.anchor_id in by_anchor:
                raise ConfigParseError(
                    f"VMs '{by_anchor[entry.anchor_id].name}' and '{entry.name}' "
                    f"share kvm debug dir '{entry.anchor_id}'"
                )
            if entry.name in names:
                raise ConfigParseError(f"Duplicate VM name '{entry.name}'")
            by_anchor[entry.anchor_id] = entry
            names.add(entry.name)
        object.__setattr__(
            self,
            '_by_anchor',
            MappingProxyType({anchor: entry.name for anchor, entry in by_anchor.items()})
        )

    @property
    def mapping(self) -> Mapping[str, str]:
        """Read-only anchor -> name view."""
        return self._by_anchor

    def lookup(self, anchor: str) -> Optional[str]:
        return self._by_anchor.get(anchor)

    def __contains__(self, anchor: object) -> bool:
        return anchor in self._by_anchor

    def __len__(self) -> int:
        return len(self._by_anchor)

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class LabelIndexCell:
    """Holds the published LabelIndex.

    Readers call load() once per scrape and use that snapshot throughout.
    publish() rebinds a single attribute, so a reader sees either the old or
    the new index, never a mix. Neither side takes a lock.
    """

    def __init__(self, initial: LabelIndex):
        self._current = initial

    def load(self) -> LabelIndex:
        return self._current

    def publish(self, index: LabelIndex) -> LabelIndex:
        """Replace the active index, returning the one it replaced."""
        previous = self._current
        self._current = index
        return previous

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class VmMapLoader:
    """Reads the VM map file and builds LabelIndex generations."""

    SECTION = 'vm_infos'
    ANCHOR_KEY = 'kvm_debug_dir'
    PID_KEY = 'pid'

    def __init__(self, logger: logging.Logger):
        self.logger = logger
        self._generations = itertools.count(1)

    def load(self, path: Union[str, Path]) -> LabelIndex:
        """Read, parse and index the VM map at path.

        Raises:
            ConfigReadError: The file cannot be read
            ConfigParseError: The content is not a valid VM map
        """
        path = Path(path)
        try:
            content = path.read_bytes()
        except OSError as e:
            raise ConfigReadError(f"Unable to read VM map {path}: {e}") from e

        try:
            text = content.decode('utf-8')
        except UnicodeDecodeError as e:
            raise ConfigParseError(f"VM map {path} is not valid UTF-8: {e}") from e

        entries = self.parse(text, source=path)
        index = LabelIndex(
            entries=tuple(entries),
            generation=next(self._generations),
            source=path
        )

        if not index:
            self.logger.warning(f"VM map {path} defines no VMs, only global counters will be labelled")
        self.logger.info(f"Loaded VM map {path} (generation {index.generation}, {len(index)} VMs)")
        self.logger.verbose(lambda: f"VM map contents: {json.dumps(dict(index.mapping), indent=2)}")
        return index

    def parse(self, text: str, source: Union[str, Path] = '<string>') -> List[VmEntry]:
        """Parse VM map text into entries."""
        try:
            document = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ConfigParseError(f"Invalid YAML in VM map {source}: {e}") from e

        if document is None:
            raise ConfigParseError(f"VM map {source} is empty")
        if not isinstance(document, dict):
            raise ConfigParseError(f"VM map {source} must be a mapping")
        if self.SECTION not in document:
            raise ConfigParseError(f"VM map {source} is missing the '{self.SECTION}' section")

        vm_infos = document[self.SECTION] or {}
        if not isinstance(vm_infos, dict):
            raise ConfigParseError(f"'{self.SECTION}' in {source} must map VM names to entries")

        return [
            self._parse_entry(str(name), info, source)
            for name, info in vm_infos.items()
        ]

    def _parse_entry(self, name: str, info: Any, source: Union[str, Path]) -> VmEntry:
        if not isinstance(info, dict):
            raise ConfigParseError(f"VM '{name}' in {source} must be a mapping")

        pid = info.get(self.PID_KEY)
        pid = None if pid is None else str(pid)

        anchor = info.get(self.ANCHOR_KEY)
        if anchor is None or anchor == '':
            anchor = pid
        if not anchor:
            raise ConfigParseError(
                f"VM '{name}' in {source} needs '{self.ANCHOR_KEY}' or '{self.PID_KEY}'"
            )

        anchor = str(anchor)
        if os.sep in anchor or anchor in ('.', '..'):
            raise ConfigParseError(
                f"VM '{name}' in {source} has invalid {self.ANCHOR_KEY} '{anchor}': "
                "must be a single directory name"
            )

        return VmEntry(name=name, anchor_id=anchor, pid=pid)

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Debug Tree Walk and Label Resolution
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

def check_kvm_debug_dir(path: str) -> None:
    """Fail unless the kvm debug dir is a listable directory."""
    if not os.path.isdir(path):
        raise DebugDirError(f"kvm debug not mounted: {path} is not a directory")
    if not os.access(path, os.R_OK | os.X_OK):
        raise DebugDirError(f"insufficient privilege to read {path}, run as root")


def walk_tree(root: str, max_depth: int, visit: Callable[[str], None]) -> None:
    """Depth-first walk of root calling visit for every regular file.

    Directories more than max_depth levels below root are pruned before
    descending. Symlinks and special files are ignored. Entries are visited
    in name order.

    Raises:
        WalkError: A directory could not be listed or an entry statted.
            The rest of the walk is abandoned.
    """
    if max_depth < 0:
        raise ValueError(f"max_depth must be non-negative, got {max_depth}")

    def descend(directory: str, depth: int) -> None:
        try:
            with os.scandir(directory) as it:
                entries = sorted(it, key=lambda entry: entry.name)
        except OSError as e:
            raise WalkError(directory, e) from e

        for entry in entries:
            try:
                is_dir = entry.is_dir(follow_symlinks=False)
                is_file = not is_dir and entry.is_file(follow_symlinks=False)
            except OSError as e:
                raise WalkError(entry.path, e) from e

            if is_dir:
                if depth + 1 > max_depth:
                    continue
                descend(entry.path, depth + 1)
            elif is_file:
                visit(entry.path)

    descend(os.path.normpath(root), 0)

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

GLOBAL_DOMAIN = 'global'


@dataclass(frozen=True)
class ResolvedLabels:
    """Labels for a counter file."""
    domain: str
    vcpu: Optional[str] = None

    def as_dict(self) -> Dict[str, str]:
        labels = {'domain': self.domain}
        if self.vcpu is not None:
            labels['vcpu'] = self.vcpu
        return labels


def resolve_labels(index: LabelIndex, parent_dir: str, root: str) -> ResolvedLabels:
    """Resolve the directory holding a counter file to its labels.

    root itself is the global domain. One level below, the directory name is
    the VM anchor. Two levels below, the directory is the vCPU and its parent
    the anchor.
    """
    root = os.path.normpath(root)
    parent = os.path.normpath(parent_dir)

    if parent == root:
        return ResolvedLabels(domain=GLOBAL_DOMAIN)

    prefix = root if root.endswith(os.sep) else root + os.sep
    if not parent.startswith(prefix):
        raise InvalidPathError(f"invalid dir path {parent_dir}: not under {root}")

    segments = []
    while parent != root:
        if len(segments) == 2:
            raise DepthExceededError(f"{parent_dir} is out of max depth below {root}")
        segments.append(os.path.basename(parent))
        parent = os.path.dirname(parent)

    if len(segments) == 1:
        anchor, vcpu = segments[0], None
    else:
        vcpu, anchor = segments

    name = index.lookup(anchor)
    if name is None:
        raise UnknownAnchorError(anchor)

    return ResolvedLabels(domain=name, vcpu=vcpu)

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Samples
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

METRIC_NAMESPACE = 'kvm_stat'
METRIC_SUFFIX = 'count'

_INTEGER_RE = re.compile(r'[+-]?[0-9]+')


@dataclass(frozen=True)
class Sample:
    """One gauge value read from a counter file."""
    name: str
    value: float
    labels: Dict[str, str] = field(default_factory=dict)
    documentation: str = ''


def metric_name_for(file_name: str, vcpu: Optional[str] = None) -> Tuple[str, str]:
    """Return (short name, fully qualified name) for a counter file."""
    metric = file_name
    # vcpu file names carry hyphens, which are not valid in metric names
    if vcpu is not None:
        metric = f"vcpu_{file_name.replace('-', '_')}"
    return metric, f"{METRIC_NAMESPACE}_{metric}_{METRIC_SUFFIX}"


def build_sample(
    file_path: str,
    raw_content: str,
    domain: str,
    vcpu: Optional[str] = None,
    source_dir: str = ProgramConfig.DEFAULT_KVM_DEBUG_DIR
) -> Optional[Sample]:
    """Turn a counter file's content into a Sample.

    Returns None for blank counters.

    Raises:
        ValueParseError: The content is not a base-10 integer
    """
    content = raw_content[:-1] if raw_content.endswith('\n') else raw_content
    if not content:
        return None

    if not _INTEGER_RE.fullmatch(content):
        raise ValueParseError(f"parse value from {file_path} failed: {content!r} is not an integer")

    try:
        value = float(int(content))
    except (ValueError, OverflowError) as e:
        raise ValueParseError(f"parse value from {file_path} failed: {e}") from e

    metric, name = metric_name_for(os.path.basename(file_path), vcpu)
    labels = ResolvedLabels(domain=domain, vcpu=vcpu).as_dict()

    return Sample(
        name=name,
        value=value,
        labels=labels,
        documentation=f"{metric} count from {source_dir}"
    )

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Metrics Collection
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass
class ScrapeResult:
    """Outcome of one debug tree scrape."""
    samples: int = 0
    skipped: int = 0
    blank: int = 0
    generation: int = 0
    skip_reasons: Dict[str, int] = field(default_factory=dict)

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass
class CollectionStats:
    """Statistics for scrape operations.

    Tracks scrape success/failure rates and timing information
    for health monitoring and operational visibility.

    Attributes:
        attempts (int): Total scrape attempts
        successful (int): Scrapes that walked the whole tree
        errors (int): Scrapes aborted by a walk error
        consecutive_failures (int): Current streak of failures
        last_samples (int): Samples emitted by the last scrape
        last_skipped (int): Files skipped by the last scrape
        last_error (Optional[str]): Message of the last walk error
        last_collection_time (float): Duration of last scrape
        total_collection_time (float): Cumulative scrape time
        last_collection_datetime (datetime): Timestamp of last scrape
    """
    attempts: int = 0
    successful: int = 0
    errors: int = 0
    consecutive_failures: int = 0
    last_samples: int = 0
    last_skipped: int = 0
    last_error: Optional[str] = None
    last_collection_time: float = 0
    total_collection_time: float = 0
    last_collection_datetime: datetime = field(
        default_factory=lambda: ProgramConfig.now_utc()
    )

    def record(self, duration: float, result: Optional[ScrapeResult], error: Optional[str] = None):
        """Record one scrape; result is None when the scrape was aborted."""
        self.attempts += 1
        self.last_collection_time = duration
        self.total_collection_time += duration
        self.last_collection_datetime = ProgramConfig.now_utc()

        if result is None:
            self.errors += 1
            self.consecutive_failures += 1
            self.last_error = error
            return

        self.successful += 1
        self.consecutive_failures = 0
        self.last_samples = result.samples
        self.last_skipped = result.skipped
        self.last_error = None

    def get_average_collection_time(self) -> float:
        """Calculate average scrape time."""
        return self.total_collection_time / self.attempts if self.attempts > 0 else 0

    def is_healthy(self, threshold: int) -> bool:
        """Determine if scrape statistics indicate healthy operation."""
        return self.consecutive_failures < threshold

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class KvmDebugStatCollector:
    """Prometheus collector scraping the kvm debug tree on every collect().

    update(emit) performs one scrape and hands each Sample to emit. collect()
    wraps it for prometheus_client, grouping samples into gauge families and
    adding the exporter's own scrape metrics.
    """

    def __init__(
        self,
        kvm_debug_dir: str,
        depth: int,
        index_cell: LabelIndexCell,
        logger: logging.Logger
    ):
        self.kvm_debug_dir = os.path.normpath(kvm_debug_dir)
        self.depth = depth
        self.index_cell = index_cell
        self.logger = logger
        self.stats = CollectionStats()
        self._stats_lock = threading.Lock()

        self.logger.debug(f"watching kvm debug path: {self.kvm_debug_dir}")

    def update(self, emit: Callable[[Sample], None]) -> ScrapeResult:
        """Scrape the debug tree once.

        The label index is read once up front, so a reload landing
        mid-scrape does not affect this scrape.

        Raises:
            WalkError: The tree could not be walked or a counter read
        """
        index = self.index_cell.load()
        result = ScrapeResult(generation=index.generation)

        def skip(path: str, error: KvmStatError) -> None:
            result.skipped += 1
            reason = type(error).__name__
            result.skip_reasons[reason] = result.skip_reasons.get(reason, 0) + 1
            self.logger.verbose(f"Skipping {path}: {error}")

        def visit(path: str) -> None:
            self.logger.verbose(f"parsing file: {path}")
            parent = os.path.dirname(path)

            try:
                labels = resolve_labels(index, parent, self.kvm_debug_dir)
            except ResolutionError as e:
                skip(path, e)
                return

            try:
                raw = Path(path).read_bytes().decode('ascii', errors='replace')
            except OSError as e:
                raise WalkError(path, e) from e

            try:
                sample = build_sample(
                    path, raw, labels.domain, labels.vcpu,
                    source_dir=self.kvm_debug_dir
                )
            except ValueParseError as e:
                skip(path, e)
                return

            if sample is None:
                result.blank += 1
                return

            emit(sample)
            result.samples += 1

        walk_tree(self.kvm_debug_dir, self.depth, visit)

        if result.skipped:
            self.logger.warning(
                f"Skipped {result.skipped} counter files during scrape: "
                f"{json.dumps(result.skip_reasons, sort_keys=True)}"
            )
        return result

    def describe(self) -> List[GaugeMetricFamily]:
        # Empty so registering does not trigger a scrape
        return []

    def stats_snapshot(self) -> CollectionStats:
        """Copy of the scrape statistics, consistent with one recorded scrape."""
        with self._stats_lock:
            return replace(self.stats)

    def collect(self) -> Iterator[GaugeMetricFamily]:
        """Scrape and yield gauge families for prometheus_client."""
        families: Dict[str, GaugeMetricFamily] = {}
        label_names: Dict[str, Tuple[str, ...]] = {}

        def emit(sample: Sample) -> None:
            names = tuple(sample.labels)
            family = families.get(sample.name)
            if family is None:
                try:
                    family = GaugeMetricFamily(
                        sample.name,
                        sample.documentation,
                        labels=list(names)
                    )
                except ValueError as e:
                    self.logger.warning(f"Cannot expose {sample.name}: {e}")
                    return
                families[sample.name] = family
                label_names[sample.name] = names
            elif label_names[sample.name] != names:
                self.logger.warning(
                    f"Dropping {sample.name}{sample.labels}: label names differ from {label_names[sample.name]}"
                )
                return
            family.add_metric([sample.labels[n] for n in names], sample.value)

        start = time.monotonic()
        result = None
        error = None
        try:
            result = self.update(emit)
        except WalkError as e:
            error = str(e)
            self.logger.error(f"Scrape of {self.kvm_debug_dir} aborted: {e}")
        duration = time.monotonic() - start

        with self._stats_lock:
            self.stats.record(duration, result, error)

        if result is not None:
            yield from families.values()

        yield from self._internal_metrics(duration, result)

    def _internal_metrics(self, duration: float, result: Optional[ScrapeResult]) -> Iterator[GaugeMetricFamily]:
        index = self.index_cell.load()
        yield GaugeMetricFamily(
            f'{METRIC_NAMESPACE}_scrape_duration_seconds',
            'Duration of the kvm debug tree scrape in seconds',
            value=duration
        )
        yield GaugeMetricFamily(
            f'{METRIC_NAMESPACE}_scrape_success',
            'Whether the last kvm debug tree scrape walked the whole tree',
            value=0 if result is None else 1
        )
        yield GaugeMetricFamily(
            f'{METRIC_NAMESPACE}_scrape_skipped_files',
            'Counter files skipped by the last scrape (unlabelled or unparsable)',
            value=0 if result is None else result.skipped
        )
        yield GaugeMetricFamily(
            f'{METRIC_NAMESPACE}_label_index_generation',
            'Generation of the active VM map',
            value=index.generation
        )
        yield GaugeMetricFamily(
            f'{METRIC_NAMESPACE}_label_index_vms',
            'Number of VMs in the active VM map',
            value=len(index)
        )

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# VM Map Hot Reload
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class WatcherState(Enum):
    """Reload watcher states."""
    IDLE = "idle"
    RELOADING = "reloading"

@dataclass
class ReloadResult:
    """Outcome of a VM map reload attempt."""
    success: bool
    generation: Optional[int] = None
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: ProgramConfig.now_utc())

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class VmMapEventHandler(FileSystemEventHandler):
    """Forwards watchdog events that touch the VM map file."""

    RELEVANT_EVENTS = (EVENT_TYPE_MODIFIED, EVENT_TYPE_CREATED, EVENT_TYPE_MOVED)

    def __init__(self, map_path: Path, on_change: Callable[[], None]):
        super().__init__()
        self._map_path = os.path.abspath(map_path)
        self._on_change = on_change

    def _matches(self, path: Union[str, bytes, None]) -> bool:
        if not path:
            return False
        if isinstance(path, bytes):
            path = os.fsdecode(path)
        return os.path.abspath(path) == self._map_path

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type not in self.RELEVANT_EVENTS:
            return
        # Editors that save by rename show up as a move onto the map path
        if self._matches(event.src_path) or self._matches(getattr(event, 'dest_path', None)):
            self._on_change()

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ReloadWatcher:
    """Watches the VM map and publishes a new LabelIndex on change.

    The map's directory is watched rather than the file, so replacing the
    file keeps working. A failed reload is logged and the previous index
    stays published.
    """

    OBSERVER_JOIN_TIMEOUT = 5  # seconds

    def __init__(
        self,
        map_path: Union[str, Path],
        loader: VmMapLoader,
        index_cell: LabelIndexCell,
        logger: logging.Logger
    ):
        self.map_path = Path(map_path)
        self.loader = loader
        self.index_cell = index_cell
        self.logger = logger
        self.state = WatcherState.IDLE
        self.last_result: Optional[ReloadResult] = None
        self.reload_count = 0
        self.reload_failures = 0

    def reload(self) -> ReloadResult:
        """Load the VM map and publish it if valid."""
        self.state = WatcherState.RELOADING
        self.logger.info("config modified")
        try:
            index = self.loader.load(self.map_path)
        except ConfigError as e:
            error = ReloadError(f"unable to parse config: {e}")
            self.reload_failures += 1
            self.logger.error(
                f"{error}; keeping VM map generation {self.index_cell.load().generation}"
            )
            self.last_result = ReloadResult(success=False, error=str(error))
        else:
            previous = self.index_cell.publish(index)
            self.reload_count += 1
            self.logger.info(
                f"Published VM map generation {index.generation} "
                f"(was {previous.generation}, {len(previous)} -> {len(index)} VMs)"
            )
            self.last_result = ReloadResult(success=True, generation=index.generation)
        finally:
            self.state = WatcherState.IDLE
        return self.last_result

    def _changed_since_load(self) -> bool:
        """True if the VM map was written after the active index was loaded."""
        try:
            mtime = self.map_path.stat().st_mtime
        except OSError:
            return False
        return mtime > self.index_cell.load().loaded_at.timestamp()

    async def watch(self, cancel_event: asyncio.Event) -> None:
        """Reload on every change to the VM map until cancel_event is set."""
        loop = asyncio.get_running_loop()
        changes: asyncio.Queue = asyncio.Queue()

        watched_dir = self.map_path.parent.resolve()
        handler = VmMapEventHandler(
            watched_dir / self.map_path.name,
            lambda: loop.call_soon_threadsafe(changes.put_nowait, None)
        )
        observer = Observer()
        observer.schedule(handler, str(watched_dir), recursive=False)
        observer.start()
        self.logger.info(f"Watching VM map {self.map_path} for changes")
        if self._changed_since_load():
            changes.put_nowait(None)

        try:
            while not cancel_event.is_set():
                change = asyncio.ensure_future(changes.get())
                stop = asyncio.ensure_future(cancel_event.wait())
                try:
                    done, _ = await asyncio.wait(
                        {change, stop},
                        return_when=asyncio.FIRST_COMPLETED
                    )
                finally:
                    change.cancel()
                    stop.cancel()

                if change not in done:
                    break

                # One reload covers a burst of events
                while not changes.empty():
                    changes.get_nowait()
                await asyncio.to_thread(self.reload)
        finally:
            observer.stop()
            observer.join(timeout=self.OBSERVER_JOIN_TIMEOUT)
            self.logger.info(f"Stopped watching VM map {self.map_path}")

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Health Check
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class HealthCheck:
    """Health check endpoint.

    Endpoints:
        GET /health: Service health status

    Response Format:
        {
            "service": {"status": "healthy|unhealthy", "up": true, ...},
            "stats": {"scrape": {...}, "configuration": {...}},
            "vm_map": {"generation": ..., "vms": ..., "last_reload": {...}}
        }
    """

    def __init__(
        self,
        config: ProgramConfig,
        collector: KvmDebugStatCollector,
        watcher: ReloadWatcher,
        logger: logging.Logger
    ):
        self.config = config
        self.collector = collector
        self.watcher = watcher
        self.logger = logger
        self._server = None
        self._thread = None

    def start(self) -> bool:
        """Start health check server in a separate thread."""
        try:
            self._server = make_server('', self.config.health_port, self.create_wsgi_app())
            self._thread = threading.Thread(
                target=self._server.serve_forever,
                name="HealthCheckServer",
                daemon=True
            )
            self._thread.start()
            self.logger.info(f"Started health check server on port {self.config.health_port}")
            return True
        except OSError as e:
            self.logger.error(f"Failed to start health check server: {e}")
            return False

    def stop(self) -> None:
        """Stop health check server."""
        if not self._server:
            return

        try:
            self.logger.info("Stopping health check server")
            self._server.shutdown()
            self._server.server_close()
            if self._thread and self._thread.is_alive():
                self._thread.join(timeout=5)
                if self._thread.is_alive():
                    self.logger.warning("Health check server thread failed to stop")
        finally:
            self._server = None
            self._thread = None

    def _create_error_response(self, status: str, message: str) -> bytes:
        """Create standardized error response."""
        response = {
            "status": status,
            "error": message,
            "timestamp_utc": self.config.now_utc().isoformat()
        }
        return json.dumps(response, indent=2).encode()

    def build_status(self) -> Tuple[bool, Dict[str, Any]]:
        """Return (healthy, status document)."""
        stats = self.collector.stats_snapshot()
        is_healthy = stats.is_healthy(self.config.failure_threshold)
        index = self.collector.index_cell.load()
        last_reload = self.watcher.last_result

        status = {
            "service": {
                "status": "healthy" if is_healthy else "unhealthy",
                "up": True,
                "current_datetime_utc": self.config.now_utc().isoformat(),
                "service_start_datetime_utc": self.config.start_time.isoformat(),
                "uptime_seconds": round(self.config.get_uptime_seconds(), 6),
                "process_id": os.getpid(),
                "systemd_managed": self.config.running_under_systemd
            },
            "stats": {
                "scrape": {
                    "attempts": stats.attempts,
                    "successful": stats.successful,
                    "errors": stats.errors,
                    "consecutive_failures": stats.consecutive_failures,
                    "failure_threshold": self.config.failure_threshold,
                    "last_samples": stats.last_samples,
                    "last_skipped_files": stats.last_skipped,
                    "last_error": stats.last_error,
                    "last_scrape_datetime_utc": stats.last_collection_datetime.isoformat(),
                    "timing": {
                        "last_scrape_seconds": round(stats.last_collection_time, 3),
                        "average_scrape_seconds": round(stats.get_average_collection_time(), 3)
                    }
                },
                "configuration": {
                    "kvm_debug_dir": self.config.kvm_debug_dir,
                    "depth": self.config.depth,
                    "config_file": str(self.config.loaded_from) if self.config.loaded_from else None
                }
            },
            "vm_map": {
                "path": str(self.watcher.map_path),
                "generation": index.generation,
                "vms": len(index),
                "loaded_datetime_utc": index.loaded_at.isoformat(),
                "watcher_state": self.watcher.state.value,
                "reloads": self.watcher.reload_count,
                "reload_failures": self.watcher.reload_failures,
                "last_reload": None if last_reload is None else {
                    "success": last_reload.success,
                    "generation": last_reload.generation,
                    "error": last_reload.error,
                    "datetime_utc": last_reload.timestamp.isoformat()
                }
            }
        }
        return is_healthy, status

    def create_wsgi_app(self):
        """Create WSGI application for health checks."""
        def app(environ, start_response):
            path = environ.get('PATH_INFO', '').rstrip('/')

            if path not in ['', '/health']:
                start_response('404 Not Found', [('Content-Type', 'application/json')])
                return [self._create_error_response("error", "Not Found")]

            try:
                is_healthy, response = self.build_status()
            except Exception as e:
                self.logger.error(f"Health check error: {e}", exc_info=True)
                start_response('500 Internal Server Error', [('Content-Type', 'application/json')])
                return [self._create_error_response("error", str(e))]

            status = '200 OK' if is_healthy else '503 Service Unavailable'
            headers = [
                ('Content-Type', 'application/json'),
                ('Cache-Control', 'no-cache, no-store, must-revalidate')
            ]
            start_response(status, headers)
            return [json.dumps(response, indent=2).encode()]

        return app

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Main Service Class and Entry Point
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class MetricsExporter:
    """Main service class for the KVM debug stat exporter.

    Owns the published VM map, the collector registered with prometheus_client,
    the reload watcher task and the health check server.

    Raises:
        DebugDirError: If the kvm debug dir is not mounted or readable
        ConfigError: If the VM map cannot be loaded at startup
    """

    SHUTDOWN_TIMEOUT = 30  # seconds

    def __init__(
        self,
        source: ProgramSource,
        config: ProgramConfig,
        logger: logging.Logger,
        registry=REGISTRY
    ):
        self.source = source
        self.config = config
        self.logger = logger
        self.registry = registry
        self.shutdown_event = asyncio.Event()
        self._servers_started = False
        self._registered = False

        self.logger.info("Starting kvm debug stat exporter initialization")

        check_kvm_debug_dir(self.config.kvm_debug_dir)

        self.loader = VmMapLoader(self.logger)
        self.index_cell = LabelIndexCell(self.loader.load(self.config.vm_map_path))

        self.collector = KvmDebugStatCollector(
            self.config.kvm_debug_dir,
            self.config.depth,
            self.index_cell,
            self.logger
        )
        self.watcher = ReloadWatcher(
            self.config.vm_map_path,
            self.loader,
            self.index_cell,
            self.logger
        )
        self.health_check = HealthCheck(self.config, self.collector, self.watcher, self.logger)

        self.logger.info("Exporter initialized")

    def _handle_signal(self, signum: int) -> None:
        """Handle shutdown signals."""
        self.logger.info(f"Received {signal.Signals(signum).name}, initiating shutdown...")
        self.shutdown_event.set()

    def check_ports(self) -> bool:
        """Check if required ports are available."""
        port_configs = [
            (self.config.metrics_port, "metrics"),
            (self.config.health_port, "health check")
        ]

        for port, name in port_configs:
            if not self._check_port_available(port, name):
                return False
        return True

    def _check_port_available(self, port: int, name: str) -> bool:
        """Check if a specific port is available."""
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.bind(('', port))
            return True
        except OSError as e:
            self.logger.error(f"{name.title()} port {port} is not available: {e}")
            return False
        finally:
            sock.close()

    def _start_servers(self) -> bool:
        """Register the collector and start metrics and health check servers."""
        self.registry.register(self.collector)
        self._registered = True

        try:
            start_http_server(self.config.metrics_port, registry=self.registry)
            self.logger.info(f"Started metrics server on port {self.config.metrics_port}")
        except OSError as e:
            self.logger.error(f"Failed to start metrics server: {e}")
            return False

        if not self.health_check.start():
            self.logger.info("Stopping metrics server (via process termination)")
            return False

        self._servers_started = True
        return True

    def _cleanup(self) -> None:
        """Stop servers and unregister the collector."""
        if self._servers_started:
            self.health_check.stop()
            # prometheus_client server will stop with process
            self.logger.info("Metrics server will stop with process termination")
            self._servers_started = False

        if self._registered:
            self.registry.unregister(self.collector)
            self._registered = False

        if self.config.running_under_systemd:
            notify(Notification.STOPPING)

    async def run(self) -> int:
        """Serve until a shutdown signal arrives."""
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(signum, self._handle_signal, signum)

        watch_task = None
        try:
            if not self.check_ports():
                self.logger.error("Required ports are not available")
                return 1

            if not self._start_servers():
                return 1

            watch_task = asyncio.create_task(
                self.watcher.watch(self.shutdown_event),
                name="ReloadWatcher"
            )

            if self.config.running_under_systemd:
                notify(Notification.READY)

            shutdown = asyncio.ensure_future(self.shutdown_event.wait())
            try:
                done, _ = await asyncio.wait(
                    {watch_task, shutdown},
                    return_when=asyncio.FIRST_COMPLETED
                )
                if watch_task in done and not self.shutdown_event.is_set():
                    error = watch_task.exception()
                    self.logger.error(
                        f"VM map watcher stopped ({error}), hot reload disabled"
                    )
                    await shutdown
            finally:
                shutdown.cancel()

            self.logger.info("Shutdown event received, stopping service")

            try:
                await asyncio.wait_for(watch_task, timeout=self.SHUTDOWN_TIMEOUT)
            except asyncio.TimeoutError:
                self.logger.error(f"VM map watcher did not stop within {self.SHUTDOWN_TIMEOUT} seconds")
            except Exception as e:
                self.logger.verbose(f"VM map watcher ended with: {e}")

            return 0

        finally:
            if watch_task is not None and not watch_task.done():
                watch_task.cancel()
            for signum in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(signum)
            self._cleanup()
            self.logger.info("Service shutdown complete")

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

async def main() -> int:
    """Entry point for the exporter service."""
    try:
        source = ProgramSource()
        config = ProgramConfig(source)
        config.load()
        logger = ProgramLogger(source, config).logger
    except (ConfigError, OSError) as e:
        print(f"Fatal error during startup: {e}", file=sys.stderr)
        return 1

    try:
        exporter = MetricsExporter(source, config, logger)
    except KvmStatError as e:
        logger.error(f"Fatal error during startup: {e}")
        if config.running_under_systemd:
            notify(Notification.STOPPING)
        return 1

    return await exporter.run()


def cli() -> None:
    """Console script entry point."""
    sys.exit(asyncio.run(main()))


if __name__ == '__main__':
    cli()
