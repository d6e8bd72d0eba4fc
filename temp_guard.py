#!/usr/bin/python3

### Simple-Stupid user-space program protecting a small box from overheating.
### It watches the CPU temperature and lowers the priority of, or pauses
### ("kill -STOP"), one hot-running process until things cool down again.
### Whatever it did to the process is undone when it exits.
### Project home: https://github.com/tobixen/temp-guard

__version__ = "0.3.0"
__author__ = "Tobias Brox"
__copyright__ = "Copyright 2025-2026, Tobias Brox"
__license__ = "GPL"
__maintainer__ = "Tobias Brox"
__email__ = "tobias@redpill-linpro.com"
__product__ = "temp-guard"

import argparse
import configparser
import glob
import json
import logging
import os
import re
import signal
import sys
import select
import tempfile
import time
from collections import namedtuple
from datetime import datetime
from os import PRIO_PROCESS, getenv, geteuid, getpid, getppid, kill, setpriority, unlink
from subprocess import DEVNULL, CalledProcessError, TimeoutExpired, check_output

# Optional imports with graceful fallback
try:
    import yaml

    HAS_YAML = True
except ImportError:
    HAS_YAML = False

try:
    import tomllib  # Python 3.11+

    HAS_TOML = True
except ImportError:
    try:
        import tomli as tomllib  # Fallback for older Python

        HAS_TOML = True
    except ImportError:
        HAS_TOML = False


#########################
## Configuration section
#########################

# Default config file search paths (in order of preference)
CONFIG_SEARCH_PATHS = [
    "/etc/temp-guard.yaml",
    "/etc/temp-guard.yml",
    "/etc/temp-guard.toml",
    "/etc/temp-guard.json",
    "/etc/temp-guard.conf",
]

DEFAULT_SENSOR_PATH = "/sys/class/thermal/thermal_zone0/temp"
DEFAULT_LOG_FILE = "/var/log/temp-guard.log"
FALLBACK_LOG_FILE = os.path.join(tempfile.gettempdir(), "temp-guard.log")
DEFAULT_STATE_FILE = os.path.join(tempfile.gettempdir(), "temp-guard-state")

POLICIES = ("warn", "nice", "pause")


class ConfigError(ValueError):
    """The merged configuration is not usable - we refuse to start."""


def _parse_bool(value):
    """Parse boolean from string."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return bool(value)
    return str(value).lower() in ("true", "yes", "1", "on")


def _parse_policy(value):
    policy = str(value).strip().lower()
    if policy not in POLICIES:
        raise ValueError("policy must be one of %s" % ", ".join(POLICIES))
    return policy


# Unified configuration schema
# Each entry: config_key -> (type_converter, env_var_name, file_key_aliases)
CONFIG_SCHEMA = {
    "warning_threshold": (int, "TEMP_GUARD_WARNING_THRESHOLD", ["warning-threshold", "threshold"]),
    "critical_threshold": (int, "TEMP_GUARD_CRITICAL_THRESHOLD", ["critical-threshold", "critical"]),
    "interval": (float, "TEMP_GUARD_INTERVAL", []),
    "process_name": (str, "TEMP_GUARD_PROCESS_NAME", ["process-name", "process"]),
    "policy": (_parse_policy, "TEMP_GUARD_POLICY", ["action"]),
    "log_file": (str, "TEMP_GUARD_LOG_FILE", ["log-file", "log"]),
    "sensor_path": (str, "TEMP_GUARD_SENSOR_PATH", ["sensor-path", "sensor"]),
    "sensor_timeout": (float, "TEMP_GUARD_SENSOR_TIMEOUT", ["sensor-timeout"]),
    "low_priority": (int, "TEMP_GUARD_LOW_PRIORITY", ["low-priority"]),
    "state_file": (str, "TEMP_GUARD_STATE_FILE", ["state-file"]),
    "date_human_readable": (_parse_bool, "TEMP_GUARD_DATE_HUMAN_READABLE", ["date-human-readable"]),
    "color": (_parse_bool, "TEMP_GUARD_COLOR", ["colour"]),
    "debug_logging": (_parse_bool, "TEMP_GUARD_DEBUG_LOGGING", ["debug-logging", "debug"]),
}

## The configuration never changes after startup, hence a namedtuple
Config = namedtuple("Config", tuple(CONFIG_SCHEMA))


def load_from_file(path=None):
    """Load configuration from file (auto-detect format by extension)."""
    if path:
        paths = [path]
    else:
        paths = CONFIG_SEARCH_PATHS

    for filepath in paths:
        if not os.path.exists(filepath):
            continue
        ext = os.path.splitext(filepath)[1].lower()
        try:
            if ext in (".yaml", ".yml"):
                return _load_yaml(filepath)
            elif ext == ".toml":
                return _load_toml(filepath)
            elif ext == ".json":
                return _load_json(filepath)
            else:  # .conf, .ini, or unknown
                return _load_ini(filepath)
        except ImportError as e:
            logging.warning(f"Config format not supported for {filepath}: {e}")
            continue
        except Exception as e:
            logging.warning(f"Failed to load config from {filepath}: {e}")
            continue
    return {}


def _load_yaml(path):
    """Load YAML config file."""
    if not HAS_YAML:
        raise ImportError("PyYAML not installed - install with: pip install PyYAML")
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    return data.get("temp-guard", data)


def _load_toml(path):
    """Load TOML config file."""
    if not HAS_TOML:
        raise ImportError("TOML support not available - install tomli (Python <3.11) or use Python 3.11+")
    with open(path, "rb") as f:
        data = tomllib.load(f)
    return data.get("temp-guard", data)


def _load_json(path):
    """Load JSON config file."""
    with open(path) as f:
        data = json.load(f)
    return data.get("temp-guard", data)


def _load_ini(path):
    """Load INI config file."""
    parser = configparser.ConfigParser()
    parser.read(path)
    if "temp-guard" not in parser:
        return {}
    return dict(parser["temp-guard"])


def load_from_env():
    """Load configuration from environment variables."""
    env_config = {}

    for config_key, (converter, env_var, _) in CONFIG_SCHEMA.items():
        value = getenv(env_var)
        if value is not None:
            try:
                env_config[config_key] = converter(value)
            except (ValueError, TypeError) as e:
                logging.warning(f"Invalid value for {env_var}: {value} - {e}")

    return env_config


def get_defaults():
    """Get default configuration values."""
    return {
        "warning_threshold": 75,
        "critical_threshold": 82,
        "interval": 10.0,
        "process_name": "gemini",
        "policy": "warn",
        "log_file": DEFAULT_LOG_FILE,
        "sensor_path": DEFAULT_SENSOR_PATH,
        "sensor_timeout": 2.0,
        "low_priority": 19,
        "state_file": DEFAULT_STATE_FILE,
        "date_human_readable": True,
        "color": None,  # None: colour when the console is a terminal
        "debug_logging": False,
    }


def normalize_file_config(file_config):
    """Normalize config keys and values from file config.

    Handles underscore/hyphen differences and type conversions.  Unknown
    keys are reported and dropped.
    """
    normalized = {}

    # Build reverse mapping from file key aliases to config keys
    file_key_to_config = {}
    for config_key, (_, _, aliases) in CONFIG_SCHEMA.items():
        for alias in aliases:
            file_key_to_config[alias] = config_key

    for key, value in file_config.items():
        ## YAML keys may be integers or booleans
        key = str(key)
        norm_key = file_key_to_config.get(key, key.replace("-", "_"))

        if norm_key not in CONFIG_SCHEMA:
            logging.warning(f"Unknown config key ignored: {key}")
            continue
        converter = CONFIG_SCHEMA[norm_key][0]
        try:
            normalized[norm_key] = converter(value)
        except (ValueError, TypeError) as e:
            logging.warning(f"Invalid value for config key {key}: {value} - {e}")

    return normalized


def load_config(args):
    """Merge config from defaults <- file <- env <- CLI.

    Priority order (highest to lowest):
    1. CLI arguments
    2. Environment variables
    3. Config file
    4. Defaults

    Returns a plain dict, see init_config() for the validated Config.
    """
    final = get_defaults()

    config_path = getattr(args, "config", None)
    file_config = load_from_file(config_path)
    if file_config:
        final.update(normalize_file_config(file_config))

    final.update(load_from_env())

    # CLI arguments (non-None values only)
    for config_key in CONFIG_SCHEMA:
        value = getattr(args, config_key, None)
        if value is not None:
            final[config_key] = value

    return final


def validate_config(cfg):
    """Raise ConfigError unless cfg is something we can run with."""
    if cfg.warning_threshold >= cfg.critical_threshold:
        raise ConfigError(
            "warning threshold (%s°C) must be lower than the critical threshold (%s°C)"
            % (cfg.warning_threshold, cfg.critical_threshold)
        )
    if cfg.interval <= 0:
        raise ConfigError("interval must be positive, got %s" % cfg.interval)
    if cfg.sensor_timeout <= 0:
        raise ConfigError("sensor timeout must be positive, got %s" % cfg.sensor_timeout)
    if not cfg.process_name or not cfg.process_name.strip():
        raise ConfigError("process name filter must not be empty")
    if cfg.policy not in POLICIES:
        raise ConfigError("policy must be one of %s, got %r" % (", ".join(POLICIES), cfg.policy))
    if not 1 <= cfg.low_priority <= 19:
        raise ConfigError("low priority must be a nice value between 1 and 19, got %s" % cfg.low_priority)
    return cfg


def init_config(args=None):
    """Build the validated Config from all configuration sources.

    This should be called once at startup, after argument parsing.
    """
    if args is None:
        args = argparse.Namespace()
    return validate_config(Config(**load_config(args)))


def create_argument_parser():
    """Create argument parser with all configuration options."""
    p = argparse.ArgumentParser(
        prog="temp-guard",
        description="Temperature guard - lower the priority of, or pause, a process when the CPU runs hot",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Actions:
  warn   - Log warnings only (no process intervention)
  nice   - Reduce process priority when hot
  pause  - Pause process when critical (requires sudo)

Configuration priority (highest to lowest):
  1. Command-line arguments
  2. Environment variables (TEMP_GUARD_*)
  3. Config file (--config or auto-detected)
  4. Built-in defaults

Config file search order (first found is used):
  /etc/temp-guard.yaml
  /etc/temp-guard.yml
  /etc/temp-guard.toml
  /etc/temp-guard.json
  /etc/temp-guard.conf

Example usage:
  temp-guard
  temp-guard --action nice --process gemini
  sudo temp-guard --action pause --threshold 70 --critical 80
""",
    )

    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    p.add_argument(
        "--config",
        "-c",
        metavar="PATH",
        help="Configuration file path (auto-detects format by extension)",
    )

    # Thresholds and timing
    p.add_argument(
        "--threshold",
        "--warning",
        dest="warning_threshold",
        type=int,
        metavar="TEMP",
        help="Warning temperature in °C (default: 75)",
    )
    p.add_argument(
        "--critical",
        dest="critical_threshold",
        type=int,
        metavar="TEMP",
        help="Critical temperature in °C (default: 82)",
    )
    p.add_argument(
        "--interval",
        type=float,
        metavar="SECONDS",
        help="Check interval (default: 10)",
    )

    # Managed process
    p.add_argument(
        "--process",
        dest="process_name",
        metavar="NAME",
        help="Process to manage, matched against the command line (default: gemini)",
    )
    p.add_argument(
        "--action",
        "--policy",
        dest="policy",
        choices=POLICIES,
        default=None,
        help="Action: pause|nice|warn (default: warn)",
    )
    p.add_argument(
        "--low-priority",
        dest="low_priority",
        type=int,
        metavar="NICE",
        help="Nice value used when reducing priority (default: 19)",
    )

    # Sensor
    p.add_argument(
        "--sensor",
        dest="sensor_path",
        metavar="PATH",
        help="Thermal sensor file in millidegrees (default: %s)" % DEFAULT_SENSOR_PATH,
    )
    p.add_argument(
        "--sensor-timeout",
        dest="sensor_timeout",
        type=float,
        metavar="SECONDS",
        help="Give up on the vcgencmd fallback sensor after this long (default: 2)",
    )

    # Files
    p.add_argument(
        "--log",
        dest="log_file",
        metavar="FILE",
        help="Log file (default: %s, falls back to %s)" % (DEFAULT_LOG_FILE, FALLBACK_LOG_FILE),
    )
    p.add_argument(
        "--state-file",
        dest="state_file",
        metavar="FILE",
        help="Where active interventions are recorded for crash recovery (default: %s)" % DEFAULT_STATE_FILE,
    )

    # Logging options
    p.add_argument(
        "--debug",
        "--debug-logging",
        dest="debug_logging",
        action="store_true",
        default=None,
        help="Enable debug logging to stderr",
    )
    p.add_argument(
        "--date-human-readable",
        dest="date_human_readable",
        action="store_true",
        default=None,
        help="Use human-readable date format in logs (default: true)",
    )
    p.add_argument(
        "--date-unix",
        dest="date_human_readable",
        action="store_false",
        help="Use Unix timestamp in logs",
    )
    p.add_argument(
        "--color",
        dest="color",
        action="store_true",
        default=None,
        help="Colour console output (default: only on a terminal)",
    )
    p.add_argument(
        "--no-color",
        dest="color",
        action="store_false",
        help="Never colour console output",
    )

    return p


#########################
## Temperature sensors
#########################

## A reading is whole degrees Celsius, or None if the sensor could not be read
UNAVAILABLE = None


class TemperatureSensor:
    """Base class for temperature sources.

    read_temperature() returns whole degrees Celsius, or UNAVAILABLE.
    It should never raise - a broken sensor must not kill the loop.
    """

    def read_temperature(self):
        raise NotImplementedError()


class SysfsTemperatureSensor(TemperatureSensor):
    """The kernel thermal zone file, reporting millidegrees"""

    def __init__(self, path=DEFAULT_SENSOR_PATH):
        self.path = path

    def read_temperature(self):
        try:
            with open(self.path) as sensor_file:
                millidegrees = int(sensor_file.read().strip())
        except (FileNotFoundError, PermissionError, OSError, ValueError) as e:
            logging.debug(f"could not read temperature from {self.path}: {e}")
            return UNAVAILABLE
        ## truncate towards zero, same as integer division in the shell
        return int(millidegrees / 1000)


def parse_vcgencmd_output(output):
    """Parse "temp=48.3'C" into whole degrees.  Returns None on garbage."""
    match = re.search(r"temp=(-?\d+(?:\.\d+)?)", output)
    if not match:
        return UNAVAILABLE
    return int(float(match.group(1)))


class VcgencmdTemperatureSensor(TemperatureSensor):
    """
    The VideoCore tool found on Raspberry Pi boxes.  It's an external
    command, so it runs with a timeout - a hung vcgencmd counts as a
    failed reading.
    """

    def __init__(self, timeout=2.0):
        self.timeout = timeout

    def read_temperature(self):
        try:
            output = check_output(["vcgencmd", "measure_temp"], stderr=DEVNULL, timeout=self.timeout)
        except (OSError, CalledProcessError, TimeoutExpired) as e:
            logging.debug(f"vcgencmd measure_temp failed: {e}")
            return UNAVAILABLE
        return parse_vcgencmd_output(output.decode("utf-8", "ignore"))


class GlobalTemperatureSensor(TemperatureSensor):
    """Asks the sensors in order, the first actual reading wins"""

    def __init__(self, sensors=None):
        if sensors is None:
            sensors = [SysfsTemperatureSensor(), VcgencmdTemperatureSensor()]
        self.sensors = sensors

    def read_temperature(self):
        for sensor in self.sensors:
            reading = sensor.read_temperature()
            if reading is not UNAVAILABLE:
                return reading
        return UNAVAILABLE


#########################
## Process locator
#########################


class ProcessLocator:
    """Finds the pid of the managed process.

    The name filter is matched as a substring of the full command line,
    like "pgrep -f".  If several processes match, the one with the lowest
    pid wins.  That choice is arbitrary, but at least it's stable.
    """

    def __init__(self, name_filter):
        self.name_filter = name_filter

    @staticmethod
    def list_pids():
        pids = []
        for cmdline_file in glob.glob("/proc/[0-9]*/cmdline"):
            try:
                pids.append(int(cmdline_file.split("/")[2]))
            except (IndexError, ValueError):
                continue
        return sorted(pids)

    @staticmethod
    def read_cmdline(pid):
        """
        helper method - returns the command line of pid with the NUL
        separators replaced by spaces, or None if it cannot be read
        """
        try:
            with open("/proc/%s/cmdline" % pid, "rb") as cmdline_file:
                raw = cmdline_file.read()
        except (FileNotFoundError, ProcessLookupError, PermissionError, OSError):
            return None
        return raw.replace(b"\0", b" ").decode("utf-8", "ignore").strip()

    def find_process(self):
        """Returns the pid of the first matching process, or None"""
        ## our own command line (and the one of sudo or the shell that
        ## started us) is likely to contain the filter string
        own_pids = (getpid(), getppid())
        for pid in self.list_pids():
            if pid in own_pids:
                continue
            cmdline = self.read_cmdline(pid)
            if cmdline and self.name_filter in cmdline:
                return pid
        return None

    def is_running(self, pid):
        """Is pid still alive and still the process we are looking for?"""
        cmdline = self.read_cmdline(pid)
        return bool(cmdline) and self.name_filter in cmdline


#########################
## Intervention actuator
#########################

ActionResult = namedtuple("ActionResult", ("ok", "reason"))

DEFAULT_PRIORITY = 0


class ProcessActuator:
    """
    Applies and reverses interventions on a process.  All operations are
    best-effort and idempotent; they never raise, the outcome is reported
    through the returned ActionResult.
    """

    def __init__(self, low_priority=19, default_priority=DEFAULT_PRIORITY):
        self.low_priority = low_priority
        self.default_priority = default_priority

    def lower_priority(self, pid):
        return self._renice(pid, self.low_priority)

    def restore_priority(self, pid):
        return self._renice(pid, self.default_priority)

    def suspend(self, pid):
        return self._signal(pid, signal.SIGSTOP)

    def resume(self, pid):
        return self._signal(pid, signal.SIGCONT)

    @staticmethod
    def _renice(pid, priority):
        try:
            setpriority(PRIO_PROCESS, pid, priority)
        except ProcessLookupError:
            return ActionResult(False, "no such process")
        except PermissionError:
            return ActionResult(False, "permission denied")
        except OSError as e:
            return ActionResult(False, str(e))
        return ActionResult(True, "nice value set to %s" % priority)

    @staticmethod
    def _signal(pid, signum):
        try:
            kill(pid, signum)
        except ProcessLookupError:
            return ActionResult(False, "no such process")
        except PermissionError:
            return ActionResult(False, "permission denied")
        except OSError as e:
            return ActionResult(False, str(e))
        return ActionResult(True, "sent %s" % signal.Signals(signum).name)


#########################
## Logging
#########################

LEVEL_NAMES = {
    logging.DEBUG: "DEBUG",
    logging.INFO: "INFO",
    logging.WARNING: "WARN",
    logging.ERROR: "ERROR",
    logging.CRITICAL: "CRITICAL",
}


def get_date_string(human_readable=True):
    if human_readable:
        return datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    else:
        return str(time.time())


def ignore_failure(method):
    def _try_except_pass(*args, **kwargs):
        try:
            return method(*args, **kwargs)
        except Exception:
            logging.critical("Exception ignored", exc_info=True)

    return _try_except_pass


class EventLog:
    """The audit log: one "[timestamp] [LEVEL] message" line per event.

    Lines are appended to a file and mirrored to the console through the
    logging module.  Nothing is ever rewritten or rotated here.
    """

    def __init__(self, path=DEFAULT_LOG_FILE, fallback_path=None, date_human_readable=True):
        self.path = path
        self.fallback_path = fallback_path or FALLBACK_LOG_FILE
        self.date_human_readable = date_human_readable

    def open(self):
        """Make sure the log file is writable, falling back to the temp
        directory once if it isn't.  Raises OSError if neither works.
        """
        try:
            self._touch(self.path)
        except OSError as e:
            if self.fallback_path == self.path:
                raise
            requested = self.path
            self._touch(self.fallback_path)
            self.path = self.fallback_path
            self.warn("Cannot write to %s (%s), using %s instead" % (requested, e.strerror or e, self.path))
        return self.path

    @staticmethod
    def _touch(path):
        with open(path, "ab"):
            pass

    def format_line(self, level, message):
        return "[%s] [%s] %s\n" % (
            get_date_string(self.date_human_readable),
            LEVEL_NAMES.get(level, logging.getLevelName(level)),
            message,
        )

    @ignore_failure
    def _write_line(self, level, message):
        with open(self.path, "ab") as logfile:
            logfile.write(self.format_line(level, message).encode("utf-8"))

    def log(self, level, message):
        self._write_line(level, message)
        logging.log(level, message)

    def info(self, message):
        self.log(logging.INFO, message)

    def warn(self, message):
        self.log(logging.WARNING, message)

    def error(self, message):
        self.log(logging.ERROR, message)


class ConsoleFormatter(logging.Formatter):
    """Same layout as the log file, coloured by level on a terminal"""

    COLORS = {
        logging.ERROR: "\033[0;31m",
        logging.WARNING: "\033[1;33m",
        logging.INFO: "\033[0;32m",
    }
    RESET = "\033[0m"

    def __init__(self, color=False, date_human_readable=True):
        super().__init__("[%(asctime)s] [%(levelname)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
        self.color = color
        self.date_human_readable = date_human_readable

    def formatTime(self, record, datefmt=None):
        if not self.date_human_readable:
            return str(record.created)
        return super().formatTime(record, datefmt)

    def format(self, record):
        line = super().format(record)
        color = self.COLORS.get(record.levelno) if self.color else None
        if color:
            return f"{color}{line}{self.RESET}"
        return line


def setup_logging(cfg, stream=None):
    """Route the root logger to the console in the event log layout."""
    logging.addLevelName(logging.WARNING, "WARN")
    handler = logging.StreamHandler(stream)
    color = cfg.color
    if color is None:
        color = getattr(handler.stream, "isatty", lambda: False)()
    handler.setFormatter(ConsoleFormatter(color=color, date_human_readable=cfg.date_human_readable))
    root = logging.getLogger()
    for old_handler in list(root.handlers):
        root.removeHandler(old_handler)
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if cfg.debug_logging else logging.INFO)
    return handler


#########################
## Thermal state machine
#########################

NORMAL = "normal"
WARNING = "warning"
CRITICAL = "critical"
UNKNOWN = "unknown"

## lifecycle phases
STARTING = "starting"
RUNNING = "running"
STOPPING = "stopping"
STOPPED = "stopped"

STOP_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)


def classify(reading, warning_threshold, critical_threshold):
    """Derive the thermal state of a reading.  There is no stored state -
    readings bouncing around a threshold will flip the state every tick.
    """
    if reading is UNAVAILABLE:
        return UNKNOWN
    if reading >= critical_threshold:
        return CRITICAL
    if reading >= warning_threshold:
        return WARNING
    return NORMAL


def check_privileges(policy, event_log):
    if policy in ("pause", "nice") and geteuid() != 0:
        event_log.warn(
            "Action '%s' requires root privileges to pause processes or restore their priority. "
            "Run with sudo or use --action=warn" % policy
        )


def recover_from_state_file(state_file, actuator, event_log):
    """
    Cleanup - undoing interventions recorded by a previous run, if
    applicable.  Returns the pid found in the state file, if any.

    If temp-guard was killed hard (or crashed without running cleanup) the
    managed process may still be paused.  The state file lives in the temp
    directory, so after a reboot there is usually nothing to recover (and
    no risk of resuming some random process that reused the pid).
    """
    try:
        with open(state_file) as f:
            content = f.read().split()
    except FileNotFoundError:
        return None
    except OSError as e:
        logging.warning(f"Could not read state file {state_file}: {e}")
        return None

    pid = None
    if content:
        try:
            pid = int(content[0])
        except ValueError:
            event_log.warn("Ignoring garbled state file %s" % state_file)
        else:
            event_log.info("cleaning up - undoing interventions on pid %s from last run" % pid)
            if "niced" in content[1:]:
                result = actuator.restore_priority(pid)
                if not result.ok:
                    event_log.warn("Could not restore priority of pid %s: %s" % (pid, result.reason))
            if "paused" in content[1:]:
                result = actuator.resume(pid)
                if not result.ok:
                    event_log.warn("Could not resume pid %s: %s" % (pid, result.reason))

    try:
        unlink(state_file)
    except FileNotFoundError:
        pass
    return pid


class TempGuardState:
    """Encapsulates the runtime state of temp-guard.

    Only two facts are remembered between ticks: whether the managed
    process is paused, and whether its priority is lowered.  Both start
    out False and are only changed here, after the actuator reported
    success.  Everything else (the reading, the pid) is looked up fresh
    on every tick.
    """

    def __init__(self, cfg, sensor=None, locator=None, actuator=None, event_log=None):
        self.config = cfg
        if sensor is None:
            sensor = GlobalTemperatureSensor(
                [SysfsTemperatureSensor(cfg.sensor_path), VcgencmdTemperatureSensor(cfg.sensor_timeout)]
            )
        if locator is None:
            locator = ProcessLocator(cfg.process_name)
        if actuator is None:
            actuator = ProcessActuator(low_priority=cfg.low_priority)
        if event_log is None:
            event_log = EventLog(cfg.log_file, date_human_readable=cfg.date_human_readable)
        self.sensor = sensor
        self.locator = locator
        self.actuator = actuator
        self.event_log = event_log
        self._wakeup_fds = None
        self._previous_handlers = {}
        self._previous_wakeup_fd = -1
        self.reset()

    def reset(self):
        """Reset all state (useful for testing)."""
        self.is_paused = False
        self.is_priority_lowered = False
        self.managed_pid = None
        self.phase = STARTING
        self._cleaned_up = False
        self.stop_requested = False

    ## Interventions.  A flag is only set after the actuator succeeded,
    ## so a failed attempt gets retried on the next qualifying tick.

    def lower_priority(self, pid):
        result = self.actuator.lower_priority(pid)
        if result.ok:
            self.is_priority_lowered = True
            self.managed_pid = pid
            self.event_log.warn(
                "Reduced priority of %s (PID: %s) due to high temperature" % (self.config.process_name, pid)
            )
            self._update_state_file()
        else:
            self.event_log.error("Failed to renice process %s: %s (try running with sudo)" % (pid, result.reason))
        return result

    def restore_priority(self, pid):
        result = self.actuator.restore_priority(pid)
        if result.ok:
            self.is_priority_lowered = False
            self.event_log.info("Restored priority of %s (PID: %s)" % (self.config.process_name, pid))
            self._update_state_file()
        else:
            self.event_log.error("Failed to restore priority for process %s: %s" % (pid, result.reason))
        return result

    def suspend(self, pid):
        result = self.actuator.suspend(pid)
        if result.ok:
            self.is_paused = True
            self.managed_pid = pid
            self.event_log.warn(
                "Paused process %s (PID: %s) due to critical temperature" % (self.config.process_name, pid)
            )
            self._update_state_file()
        else:
            self.event_log.error("Failed to pause process %s: %s (try running with sudo)" % (pid, result.reason))
        return result

    def resume(self, pid):
        result = self.actuator.resume(pid)
        if result.ok:
            self.is_paused = False
            self.event_log.info("Resumed process %s (PID: %s)" % (self.config.process_name, pid))
            self._update_state_file()
        else:
            self.event_log.error("Failed to resume process %s: %s" % (pid, result.reason))
        return result

    @ignore_failure
    def _update_state_file(self):
        """Update or remove the state file."""
        flags = [name for name, is_set in (("paused", self.is_paused), ("niced", self.is_priority_lowered)) if is_set]
        if not flags:
            self.managed_pid = None
        if flags and self.managed_pid is not None:
            with open(self.config.state_file, "w") as f:
                f.write("%s %s\n" % (self.managed_pid, " ".join(flags)))
        else:
            try:
                unlink(self.config.state_file)
            except FileNotFoundError:
                pass

    def reconcile(self, pid, reading=UNAVAILABLE):
        """Undo whatever intervention is active.

        Uses the same restore/resume calls whether we got here from a
        normal reading or from shutdown.  A failed undo leaves its flag
        set, to be retried later.

        The undo goes to the process we intervened on, not to whatever
        matches the name right now.  pid is the fallback when that one
        is not known.
        """
        if not (self.is_paused or self.is_priority_lowered):
            return
        if self.managed_pid is not None:
            pid = self.managed_pid
        if pid is None or not self.locator.is_running(pid):
            self.event_log.info(
                "Process %s is no longer running, forgetting the interventions" % self.config.process_name
            )
            self.is_paused = False
            self.is_priority_lowered = False
            self._update_state_file()
            return
        if self.is_priority_lowered:
            if reading is not UNAVAILABLE:
                self.event_log.info("Temperature normal: %s°C - restoring priority" % reading)
            self.restore_priority(pid)
        if self.is_paused:
            if reading is not UNAVAILABLE:
                self.event_log.info("Temperature normal: %s°C - resuming process" % reading)
            self.resume(pid)

    def handle_reading(self, reading, pid):
        """Classify one reading and act on it according to the policy.

        The policy is a ceiling: "nice" never pauses, and "pause" only
        acts at the critical threshold.  Returns the derived state.
        """
        cfg = self.config
        state = classify(reading, cfg.warning_threshold, cfg.critical_threshold)

        if state == CRITICAL:
            self.event_log.error("CRITICAL temperature: %s°C (threshold: %s°C)" % (reading, cfg.critical_threshold))
            if pid is not None:
                if cfg.policy == "pause" and not self.is_paused:
                    self.suspend(pid)
                elif cfg.policy == "nice" and not self.is_priority_lowered:
                    self.lower_priority(pid)

        elif state == WARNING:
            self.event_log.warn("High temperature: %s°C (threshold: %s°C)" % (reading, cfg.warning_threshold))
            if cfg.policy == "nice" and pid is not None and not self.is_priority_lowered:
                self.lower_priority(pid)

        else:
            if state == UNKNOWN:
                self.event_log.warn("Temperature unavailable - could not read any sensor")
            else:
                logging.debug("temperature %s°C is normal" % reading)
            self.reconcile(pid, reading)

        return state

    def tick(self):
        reading = self.sensor.read_temperature()
        pid = self.locator.find_process()
        logging.debug("reading: %s, pid of %s: %s" % (reading, self.config.process_name, pid))
        return self.handle_reading(reading, pid)

    ## Lifecycle

    def request_stop(self, signum=None, frame=None):
        """Signal handler - ask the main loop to stop.

        Only flips an attribute.  No locks and no logging in here, as the
        handler may run while the main thread is in the middle of anything.
        Repeated requests are harmless.
        """
        self.stop_requested = True

    def install_signal_handlers(self):
        """Route the stop signals to request_stop().

        The C level signal handler also writes a byte to a wakeup pipe,
        which cuts the sleep between ticks short (see _sleep).
        """
        wakeup_r, wakeup_w = os.pipe()
        os.set_blocking(wakeup_r, False)
        os.set_blocking(wakeup_w, False)
        self._wakeup_fds = (wakeup_r, wakeup_w)
        self._previous_wakeup_fd = signal.set_wakeup_fd(wakeup_w)
        self._previous_handlers = {}
        for signum in STOP_SIGNALS:
            self._previous_handlers[signum] = signal.signal(signum, self.request_stop)

    def remove_signal_handlers(self):
        if self._wakeup_fds is None:
            return
        for signum, handler in self._previous_handlers.items():
            if handler is not None:
                signal.signal(signum, handler)
        signal.set_wakeup_fd(self._previous_wakeup_fd)
        for fd in self._wakeup_fds:
            os.close(fd)
        self._wakeup_fds = None
        self._previous_handlers = {}

    def start(self):
        """Startup checks before entering the loop.

        Raises OSError if there is nowhere to write the log.
        """
        cfg = self.config
        self.phase = STARTING
        self.event_log.open()
        self.event_log.info("Temperature guard started")
        self.event_log.info(
            "Configuration: threshold=%s°C, critical=%s°C, interval=%ss, process=%s, action=%s, log=%s"
            % (
                cfg.warning_threshold,
                cfg.critical_threshold,
                cfg.interval,
                cfg.process_name,
                cfg.policy,
                self.event_log.path,
            )
        )
        check_privileges(cfg.policy, self.event_log)
        recover_from_state_file(cfg.state_file, self.actuator, self.event_log)

    def _sleep(self, seconds):
        """Wait until the next tick, or until a signal arrives.

        A signal that arrived while we were busy ticking has already put a
        byte in the wakeup pipe, so the select returns at once.
        """
        if self._wakeup_fds is None:
            time.sleep(seconds)
            return
        wakeup_r = self._wakeup_fds[0]
        readable, _, _ = select.select([wakeup_r], [], [], seconds)
        if readable:
            try:
                while os.read(wakeup_r, 512):
                    pass
            except BlockingIOError:
                pass

    def run(self):
        """Main temp-guard loop.  Returns when a stop has been requested."""
        self.phase = RUNNING
        tick = ignore_failure(self.tick)
        while not self.stop_requested:
            tick()
            if self.stop_requested:
                break
            ## the only place where we wait - and where a stop request
            ## interrupts us immediately
            self._sleep(self.config.interval)
        logging.debug("stop requested")

    def cleanup(self):
        """Undo any intervention before exiting.  Only the first call does anything."""
        if self._cleaned_up:
            return
        self._cleaned_up = True
        self.phase = STOPPING
        self.event_log.info("Temperature guard stopping...")
        pid = None
        if (self.is_paused or self.is_priority_lowered) and self.managed_pid is None:
            pid = self.locator.find_process()
        self.reconcile(pid)
        self.phase = STOPPED


def main(argv=None):
    """Main entry point for temp-guard."""
    p = create_argument_parser()
    args = p.parse_args(argv)

    # Configuration from all sources (CLI > env > file > defaults)
    try:
        cfg = init_config(args)
    except ConfigError as e:
        p.error(str(e))

    setup_logging(cfg)

    guard = TempGuardState(cfg)
    guard.install_signal_handlers()
    try:
        try:
            guard.start()
        except OSError as e:
            logging.error(f"No writable location for the log file: {e}")
            return 1

        try:
            guard.run()
        finally:
            guard.cleanup()
    finally:
        guard.remove_signal_handlers()
    return 0


if __name__ == "__main__":
    sys.exit(main())
