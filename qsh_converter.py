import os
import re
import sys
import json
import shutil
import hashlib
import logging
import importlib
import threading
import traceback
from logging.handlers import RotatingFileHandler
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta, date
from decimal import Decimal
from enum import Enum, IntEnum, IntFlag
from typing import List, Dict, Any, Optional, Callable, FrozenSet, Iterable

import pandas as pd
import pyarrow.parquet as pq

# --------------------------
# Configuration and Defaults
# --------------------------
DEFAULT_SOURCE_DIR = os.environ.get("QSH_SOURCE_DIR", os.path.join(os.path.expanduser("~"), "QshStorage"))
DEFAULT_OUTPUT_DIR = os.environ.get("QSH_OUTPUT_DIR", os.path.join(os.path.expanduser("~"), "QshConverter", "Storage"))
# Files converted in parallel per batch; batches run one after another
BATCH_SIZE = int(os.environ.get("QSH_BATCH_SIZE", "700"))
# Vendor reader and order-book reconstructor are plugged in as "module:callable"
DECODER_SPEC = os.environ.get("QSH_DECODER")
RECONSTRUCTOR_SPEC = os.environ.get("QSH_RECONSTRUCTOR")
LOG_DIR = os.environ.get("QSH_LOG_DIR", "logs")
LOG_FILE = os.path.join(LOG_DIR, "converter.log")
LOGGER_NAME = "qshconverter"

QSH_EXTENSION = ".qsh"
MANIFEST_NAME = "manifest.json"
PARQUET_COMPRESSION = "zstd"

TRADE_COLUMNS = ["trade_id", "time", "price", "volume", "aggressor"]
CANDLE_COLUMNS = ["time", "open", "high", "low", "close", "volume", "trades"]


# --------------------------
# Data model
# --------------------------

class DataKind(str, Enum):
    ORDER_LOG = "ordlog"
    DEALS = "deals"


# Substring in the file name that identifies each kind, e.g. Si-12.16.2016-10-24.OrdLog.qsh
DATA_KIND_MARKERS = {
    DataKind.ORDER_LOG: "OrdLog",
    DataKind.DEALS: "Deals",
}


class StreamType(IntEnum):
    """Stream type codes as reported by the .qsh reader."""
    QUOTES = 0x10
    DEALS = 0x20
    OWN_ORDERS = 0x30
    OWN_TRADES = 0x40
    MESSAGES = 0x50
    AUX_INFO = 0x60
    ORDER_LOG = 0x70


class DealType(IntEnum):
    UNKNOWN = 0
    BUY = 1
    SELL = 2


class OrdLogFlags(IntFlag):
    NONE = 0
    NON_ZERO_REPL_ACT = 1 << 0
    FLOW_START = 1 << 1
    ADD = 1 << 2
    FILL = 1 << 3
    BUY = 1 << 4
    SELL = 1 << 5
    SNAPSHOT = 1 << 6
    QUOTE = 1 << 7
    COUNTER = 1 << 8
    NON_SYSTEM = 1 << 9
    END_OF_TRANSACTION = 1 << 10
    FILL_OR_KILL = 1 << 11
    MOVED = 1 << 12
    CANCELED = 1 << 13
    CANCELED_GROUP = 1 << 14
    CROSS_TRADE = 1 << 15


class InstrumentCategory(str, Enum):
    FUTURES = "futures"
    OPTIONS = "options"


class AggressorSide(str, Enum):
    BUY = "buy"
    SELL = "sell"
    UNKNOWN = "unknown"


class OrderLogState(str, Enum):
    NON_SYSTEM = "non_system"
    ADD = "add"
    FILL = "fill"
    BUY = "buy"
    SELL = "sell"


@dataclass(frozen=True)
class Instrument:
    id: int
    symbol: str
    name: str
    category: InstrumentCategory
    tick: Decimal


@dataclass(frozen=True)
class TradeRecord:
    trade_id: int
    price: Decimal
    volume: int
    time: datetime
    instrument: Instrument
    aggressor: AggressorSide = AggressorSide.UNKNOWN


@dataclass(frozen=True)
class OrderLogRecord:
    states: FrozenSet[OrderLogState]
    time: datetime
    order_id: int
    price: int
    volume: int
    volume_rest: int
    trade_id: Optional[int] = None
    trade_price: Optional[int] = None


@dataclass
class ConversionSummary:
    total: int = 0
    succeeded: int = 0
    failed: List[str] = field(default_factory=list)
    duration: timedelta = timedelta(0)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": list(self.failed),
            "duration": format_duration(self.duration),
        }


# --------------------------
# Helpers
# --------------------------

def shutdown_logging():
    """Close and remove all handlers attached to the converter logger to prevent file descriptor leaks."""
    logger = logging.getLogger(LOGGER_NAME)
    for h in list(logger.handlers):
        try:
            h.flush()
            h.close()
        except Exception:
            pass
        logger.removeHandler(h)


def setup_logging(verbose: bool = True) -> logging.Logger:
    os.makedirs(LOG_DIR, exist_ok=True)
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.INFO)
    logger.propagate = False
    # Avoid duplicate handlers if setup_logging is called multiple times
    if logger.handlers:
        shutdown_logging()
    formatter = logging.Formatter(fmt="%(asctime)s | %(levelname)s | %(message)s", datefmt="%Y-%m-%d %H:%M:%S")

    fh = RotatingFileHandler(LOG_FILE, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8")
    fh.setLevel(logging.INFO)
    fh.setFormatter(formatter)
    logger.addHandler(fh)

    if verbose:
        ch = logging.StreamHandler(sys.stdout)
        ch.setLevel(logging.INFO)
        ch.setFormatter(formatter)
        logger.addHandler(ch)

    import atexit
    atexit.register(shutdown_logging)
    return logger


def format_duration(td: timedelta) -> str:
    """HH:MM:SS, hours are not wrapped at 24."""
    total = max(0, int(td.total_seconds()))
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


_TIMEFRAME_RE = re.compile(r"^\s*(\d+)\s*([smhd])\s*$", re.IGNORECASE)
_TIMEFRAME_UNITS = {"s": "seconds", "m": "minutes", "h": "hours", "d": "days"}


def parse_timeframe(text: str) -> timedelta:
    m = _TIMEFRAME_RE.match(text or "")
    if not m or int(m.group(1)) == 0:
        raise ValueError(f"Invalid timeframe {text!r}; expected e.g. 30s, 1m, 1h, 1d")
    return timedelta(**{_TIMEFRAME_UNITS[m.group(2).lower()]: int(m.group(1))})


def timeframe_label(timeframe: timedelta) -> str:
    seconds = int(timeframe.total_seconds())
    if seconds < 1:
        raise ValueError(f"Timeframe must be at least one second, got {timeframe}")
    for unit, size in (("d", 86400), ("h", 3600), ("m", 60)):
        if seconds % size == 0:
            return f"{seconds // size}{unit}"
    return f"{seconds}s"


def hash_file_sha256(path: str) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            h.update(chunk)
    return h.hexdigest()


def load_callable(spec: str) -> Callable:
    """Resolve a 'package.module:attr' reference."""
    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Expected 'module:callable', got {spec!r}")
    obj: Any = importlib.import_module(module_name)
    for part in attr.split("."):
        obj = getattr(obj, part)
    return obj


def resolve_decoder(spec: Optional[str] = None) -> Callable:
    spec = spec or DECODER_SPEC
    if not spec:
        raise RuntimeError("No .qsh decoder configured. Set QSH_DECODER=module:callable or pass --decoder")
    return load_callable(spec)


def resolve_reconstructor(spec: Optional[str] = None) -> Callable:
    spec = spec or RECONSTRUCTOR_SPEC
    if not spec:
        return FillPairReconstructor
    return load_callable(spec)


# --------------------------
# Record mapping
# --------------------------

def instrument_from_security(security) -> Instrument:
    ticker = security.ticker
    category = InstrumentCategory.FUTURES
    if ticker.endswith("TOM") or ticker.endswith("TOD"):
        category = InstrumentCategory.OPTIONS
    aux_code = getattr(security, "aux_code", None)
    name = f"{aux_code}-{security.c_name}" if aux_code else f"{security.c_name}"
    return Instrument(
        id=security.id,
        symbol=ticker,
        name=name,
        category=category,
        # via str() so a float step of 0.01 becomes Decimal('0.01'), not its binary expansion
        tick=Decimal(str(security.step)),
    )


_AGGRESSOR_BY_DEAL_TYPE = {
    DealType.BUY: AggressorSide.BUY,
    DealType.SELL: AggressorSide.SELL,
}


def aggressor_from_deal_type(deal_type) -> AggressorSide:
    return _AGGRESSOR_BY_DEAL_TYPE.get(deal_type, AggressorSide.UNKNOWN)


def trade_from_deal(deal, instrument: Instrument) -> TradeRecord:
    return TradeRecord(
        trade_id=deal.id,
        price=Decimal(deal.price) * instrument.tick,
        volume=deal.volume,
        time=deal.datetime,
        instrument=instrument,
        aggressor=aggressor_from_deal_type(deal.type),
    )


def order_log_states(flags) -> FrozenSet[OrderLogState]:
    mask = int(flags)
    states = set()
    if mask & (OrdLogFlags.NON_SYSTEM | OrdLogFlags.SNAPSHOT):
        states.add(OrderLogState.NON_SYSTEM)
    if mask & OrdLogFlags.ADD:
        states.add(OrderLogState.ADD)
    if mask & OrdLogFlags.FILL:
        states.add(OrderLogState.FILL)
    if mask & OrdLogFlags.BUY:
        states.add(OrderLogState.BUY)
    if mask & OrdLogFlags.SELL:
        states.add(OrderLogState.SELL)
    return frozenset(states)


def order_log_from_entry(entry) -> OrderLogRecord:
    states = order_log_states(entry.flags)
    is_fill = OrderLogState.FILL in states
    return OrderLogRecord(
        states=states,
        time=entry.datetime,
        order_id=entry.order_id,
        price=entry.price,
        volume=entry.amount,
        volume_rest=entry.amount_rest,
        trade_id=entry.deal_id if is_fill else None,
        trade_price=entry.deal_price if is_fill else None,
    )


class FillPairReconstructor:
    """Derives trades from the two fill entries the exchange writes per deal.

    The first fill of a deal is held back; when the counterpart fill with the
    same trade id arrives one TradeRecord is emitted through ``on_tick``
    within the same ``add`` call. The newer order (higher order id) is taken
    as the aggressor. Non-system entries never produce trades.
    """

    def __init__(self, instrument: Instrument, path: Optional[str] = None):
        self.instrument = instrument
        self.path = path
        self.on_tick: Optional[Callable[[TradeRecord], None]] = None
        self._pending: Dict[int, OrderLogRecord] = {}

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def close(self):
        self._pending.clear()

    def add(self, record: OrderLogRecord):
        if OrderLogState.NON_SYSTEM in record.states:
            return
        if OrderLogState.FILL not in record.states or record.trade_id is None:
            return
        first = self._pending.pop(record.trade_id, None)
        if first is None:
            self._pending[record.trade_id] = record
            return
        newer = record if record.order_id > first.order_id else first
        aggressor = AggressorSide.UNKNOWN
        if OrderLogState.BUY in newer.states:
            aggressor = AggressorSide.BUY
        elif OrderLogState.SELL in newer.states:
            aggressor = AggressorSide.SELL
        raw_price = record.trade_price if record.trade_price is not None else record.price
        trade = TradeRecord(
            trade_id=record.trade_id,
            price=Decimal(raw_price) * self.instrument.tick,
            volume=record.volume,
            time=record.time,
            instrument=self.instrument,
            aggressor=aggressor,
        )
        if self.on_tick is not None:
            self.on_tick(trade)


# --------------------------
# Day partitioning
# --------------------------

class DayPartitioner:
    """Splits a time-ordered trade stream into one list per calendar day.

    Starts with a single empty partition. A new partition is opened only when
    a record's date is later than the date of the last record seen, so input
    that is not time-ordered ends up in extra partitions instead of failing.
    """

    def __init__(self):
        self.partitions: List[List[TradeRecord]] = [[]]

    def add(self, record: TradeRecord):
        current = self.partitions[-1]
        if current and record.time.date() > current[-1].time.date():
            current = []
            self.partitions.append(current)
        current.append(record)


# --------------------------
# Readers
# --------------------------

def _find_stream(reader, stream_type: StreamType):
    for i in range(reader.stream_count):
        stream = reader[i]
        if getattr(stream, "stream_type", None) == stream_type:
            return stream
    return None


def _read_to_end(reader):
    # The reader reports datetime.max once every stream is exhausted
    while reader.current_datetime != datetime.max:
        reader.read(True)


def read_deals(path: str, open_reader: Callable) -> List[List[TradeRecord]]:
    partitioner = DayPartitioner()
    with open_reader(path) as reader:
        stream = _find_stream(reader, StreamType.DEALS)
        if stream is None:
            return partitioner.partitions
        instrument = instrument_from_security(stream.security)
        stream.add_handler(lambda deal: partitioner.add(trade_from_deal(deal, instrument)))
        _read_to_end(reader)
    return partitioner.partitions


def read_order_log(path: str, open_reader: Callable, reconstructor_factory: Callable = FillPairReconstructor) -> List[List[TradeRecord]]:
    partitioner = DayPartitioner()
    with open_reader(path) as reader:
        stream = _find_stream(reader, StreamType.ORDER_LOG)
        if stream is None:
            return partitioner.partitions
        instrument = instrument_from_security(stream.security)
        with reconstructor_factory(instrument, path) as reconstructor:
            reconstructor.on_tick = partitioner.add
            stream.add_handler(lambda entry: reconstructor.add(order_log_from_entry(entry)))
            _read_to_end(reader)
    return partitioner.partitions


# --------------------------
# Candles
# --------------------------

def ensure_trade_schema(df: pd.DataFrame) -> pd.DataFrame:
    df = df[TRADE_COLUMNS].copy()
    df["trade_id"] = df["trade_id"].astype("int64")
    df["time"] = pd.to_datetime(df["time"])
    df["price"] = df["price"].astype("float64")
    df["volume"] = df["volume"].astype("int64")
    df["aggressor"] = df["aggressor"].astype(str)
    return df


def ensure_candle_schema(df: pd.DataFrame) -> pd.DataFrame:
    df = df[CANDLE_COLUMNS].copy()
    df["time"] = pd.to_datetime(df["time"])
    for c in ["open", "high", "low", "close"]:
        df[c] = df[c].astype("float64")
    df["volume"] = df["volume"].astype("int64")
    df["trades"] = df["trades"].astype("int64")
    return df


def trades_to_frame(trades: Iterable[TradeRecord]) -> pd.DataFrame:
    trades = list(trades)
    df = pd.DataFrame({
        "trade_id": [t.trade_id for t in trades],
        "time": [t.time for t in trades],
        "price": [float(t.price) for t in trades],
        "volume": [t.volume for t in trades],
        "aggressor": [t.aggressor.value for t in trades],
    }, columns=TRADE_COLUMNS)
    return ensure_trade_schema(df)


class CandleBuilder:
    """OHLCV bars of a fixed timeframe, buckets aligned to midnight and labelled by their start."""

    def __init__(self, timeframe: timedelta):
        if timeframe <= timedelta(0):
            raise ValueError(f"Timeframe must be positive, got {timeframe}")
        self.timeframe = timeframe
        self._frame: Optional[pd.DataFrame] = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def close(self):
        self._frame = None

    def build(self, trades) -> pd.DataFrame:
        self._frame = trades if isinstance(trades, pd.DataFrame) else trades_to_frame(trades)
        if self._frame.empty:
            return ensure_candle_schema(pd.DataFrame(columns=CANDLE_COLUMNS))
        indexed = self._frame.set_index("time")
        rule = pd.Timedelta(self.timeframe)
        prices = indexed["price"].resample(rule, label="left", closed="left")
        candles = prices.ohlc()
        candles["volume"] = indexed["volume"].resample(rule, label="left", closed="left").sum()
        candles["trades"] = prices.count()
        # resample emits every bucket in range, keep only those that traded
        candles = candles[candles["trades"] > 0]
        candles.index.name = "time"
        return ensure_candle_schema(candles.reset_index())


# --------------------------
# Storage
# --------------------------

def _atomic_write_json(path: str, obj: dict) -> None:
    tmp_path = path + ".tmp"
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(obj, f, ensure_ascii=False, indent=2)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, path)


def _atomic_write_parquet(df: pd.DataFrame, path: str):
    """Write a parquet file atomically: write to .tmp then replace."""
    tmp_path = path + ".tmp"
    if os.path.exists(tmp_path):
        os.remove(tmp_path)
    df.to_parquet(tmp_path, index=False, compression=PARQUET_COMPRESSION, engine="pyarrow")
    os.replace(tmp_path, path)


def _read_parquet(path: str) -> pd.DataFrame:
    return pd.read_parquet(path, engine="pyarrow")


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def load_manifest(root: str) -> Dict[str, Any]:
    path = os.path.join(root, MANIFEST_NAME)
    if not os.path.exists(path):
        return {
            "format": "parquet",
            "trade_columns": TRADE_COLUMNS,
            "candle_columns": CANDLE_COLUMNS,
            "files": {},
            "created_utc": _utc_now_iso(),
            "updated_utc": _utc_now_iso(),
        }
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def save_manifest(root: str, manifest: Dict[str, Any]):
    manifest["updated_utc"] = _utc_now_iso()
    _atomic_write_json(os.path.join(root, MANIFEST_NAME), manifest)


class ParquetStorage:
    """Day files per instrument: <root>/<SYMBOL>/trades/<date>.parquet and
    <root>/<SYMBOL>/candles/<timeframe>/<date>.parquet.

    Writing a day that already exists merges the rows (same day of the same
    instrument can come from two source files). Writers of one path are
    serialized; different paths are written concurrently.
    """

    def __init__(self, root: str, logger: Optional[logging.Logger] = None):
        os.makedirs(root, exist_ok=True)
        self.root = root
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self.manifest = load_manifest(root)
        self._lock = threading.Lock()
        self._path_locks: Dict[str, threading.Lock] = {}

    def trades_path(self, instrument: Instrument, day: date) -> str:
        return os.path.join(self.root, instrument.symbol, "trades", f"{day.isoformat()}.parquet")

    def candles_path(self, instrument: Instrument, timeframe: timedelta, day: date) -> str:
        return os.path.join(self.root, instrument.symbol, "candles", timeframe_label(timeframe), f"{day.isoformat()}.parquet")

    def save_trades(self, trades: List[TradeRecord], instrument: Instrument) -> Optional[str]:
        if not trades:
            return None
        day = trades[0].time.date()
        entry = {"symbol": instrument.symbol, "kind": "trades", "timeframe": None, "date": day.isoformat()}
        return self._write(trades_to_frame(trades), self.trades_path(instrument, day), "trade_id", entry)

    def save_candles(self, candles: pd.DataFrame, timeframe: timedelta, instrument: Instrument) -> Optional[str]:
        if candles is None or len(candles) == 0:
            return None
        day = pd.Timestamp(candles["time"].iloc[0]).date()
        entry = {"symbol": instrument.symbol, "kind": "candles", "timeframe": timeframe_label(timeframe), "date": day.isoformat()}
        return self._write(ensure_candle_schema(candles), self.candles_path(instrument, timeframe, day), "time", entry)

    def save_manifest(self):
        with self._lock:
            save_manifest(self.root, self.manifest)

    def _path_lock(self, path: str) -> threading.Lock:
        with self._lock:
            return self._path_locks.setdefault(path, threading.Lock())

    def _write(self, df: pd.DataFrame, path: str, key: str, entry: Dict[str, Any]) -> str:
        with self._path_lock(path):
            os.makedirs(os.path.dirname(path), exist_ok=True)
            if os.path.exists(path):
                df = pd.concat([_read_parquet(path), df], ignore_index=True)
                df = (df.drop_duplicates(subset=[key], keep="last")
                        .sort_values("time", kind="stable")
                        .reset_index(drop=True))
            _atomic_write_parquet(df, path)
            sha256 = hash_file_sha256(path)
            rel = os.path.relpath(path, self.root)
            # recorded before the path lock is released so the entry matches the file
            with self._lock:
                self.manifest.setdefault("files", {})[rel] = dict(entry, filename=rel, rows=len(df), sha256=sha256, updated_utc=_utc_now_iso())
        self.logger.info(f"Saved {entry['kind']} -> {path} (rows={len(df)}, sha256={sha256[:12]}...)")
        return path


def verify_storage(root: str, logger: logging.Logger) -> bool:
    """Manifest vs filesystem parity plus sha256 and row-count checks.
    Returns True if all checks pass, else False.
    """
    manifest = load_manifest(root)
    files = manifest.get("files", {})
    ok = True

    # Orphan files detection
    on_disk = set()
    for dirpath, _dirs, names in os.walk(root):
        for name in names:
            if name.endswith(".parquet"):
                on_disk.add(os.path.relpath(os.path.join(dirpath, name), root))
    orphans = sorted(on_disk - set(files))
    if orphans:
        logger.error(f"Orphan parquet files not in manifest: {orphans}")
        ok = False

    for rel, meta in sorted(files.items()):
        path = os.path.join(root, rel)
        if not os.path.exists(path):
            logger.error(f"Manifest refers to missing file: {path}")
            ok = False
            continue
        actual_sha = hash_file_sha256(path)
        if actual_sha != meta.get("sha256"):
            logger.error(f"SHA256 mismatch for {rel}: manifest={meta.get('sha256')} actual={actual_sha}")
            ok = False
        try:
            rows = pq.read_metadata(path).num_rows
        except Exception as e:
            logger.error(f"Failed to read parquet metadata for {rel}: {e}")
            ok = False
            continue
        if rows != int(meta.get("rows", -1)):
            logger.error(f"Row count mismatch for {rel}: manifest={meta.get('rows')} actual={rows}")
            ok = False

    if ok:
        logger.info(f"Storage verified: {len(files)} file(s) match the manifest.")
    return ok


def storage_status(root: str) -> Dict[str, Any]:
    manifest = load_manifest(root)
    files = list(manifest.get("files", {}).values())
    symbols = sorted({f["symbol"] for f in files})
    status = {
        "output_root": os.path.abspath(root),
        "file_count": len(files),
        "instruments": {},
        "updated_utc": manifest.get("updated_utc"),
        "fs_free_bytes": None,
        "fs_total_bytes": None,
    }
    for symbol in symbols:
        own = [f for f in files if f["symbol"] == symbol]
        days = sorted({f["date"] for f in own if f["kind"] == "trades"})
        status["instruments"][symbol] = {
            "trade_days": len(days),
            "first_day": days[0] if days else None,
            "last_day": days[-1] if days else None,
            "trade_rows": sum(int(f["rows"]) for f in own if f["kind"] == "trades"),
            "timeframes": sorted({f["timeframe"] for f in own if f["kind"] == "candles"}),
        }
    if os.path.isdir(root):
        total, _used, free = shutil.disk_usage(root)
        status["fs_free_bytes"] = int(free)
        status["fs_total_bytes"] = int(total)
    return status


# --------------------------
# Aggregate dispatch
# --------------------------

class AggregateDispatcher:
    """Persists each day's trades and, for days with more than one trade, its candles."""

    def __init__(self, storage, timeframes: Optional[List[timedelta]] = None, candle_builder_factory: Callable = CandleBuilder):
        self.storage = storage
        self.timeframes: List[timedelta] = list(timeframes or [])
        self.candle_builder_factory = candle_builder_factory

    def dispatch(self, partitions: List[List[TradeRecord]]):
        """Days are persisted one after another. A storage failure on a later
        day leaves the earlier days of the same file saved; the file is still
        reported as failed by the caller.
        """
        for trades in partitions:
            if not trades:
                continue
            instrument = trades[0].instrument
            self.storage.save_trades(trades, instrument)
            if len(trades) > 1:
                for timeframe in self.timeframes:
                    with self.candle_builder_factory(timeframe) as builder:
                        candles = builder.build(trades)
                    self.storage.save_candles(candles, timeframe, instrument)
            # release the day's trades before the next one is dispatched
            trades.clear()


# --------------------------
# Progress
# --------------------------

class ProgressTracker:
    """Counts finished files and reports percent plus time remaining.

    A report is emitted only when the integer percent changes. The counter
    lock covers only the increment and the message computation; delivery
    happens after it is released, under a separate report lock that drops a
    report older than the last one delivered, so observers still see
    increasing percents.
    """

    def __init__(self,
                 on_progress: Optional[Callable[[str], None]] = None,
                 on_error: Optional[Callable[[str], None]] = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.on_progress = on_progress
        self.on_error = on_error
        self._clock = clock
        self._lock = threading.Lock()
        self._report_lock = threading.Lock()
        self.total = 0
        self.completed = 0
        self.last_percent = 0
        self.reported_percent = 0
        self.start_time = clock()

    def start(self, total: int):
        with self._lock, self._report_lock:
            self.total = total
            self.completed = 0
            self.last_percent = 0
            self.reported_percent = 0
            self.start_time = self._clock()

    def file_done(self) -> Optional[str]:
        try:
            with self._lock:
                report = self._advance()
            if report is None:
                return None
            percent, message = report
            with self._report_lock:
                if percent <= self.reported_percent:
                    return None
                self.reported_percent = percent
                if self.on_progress is not None:
                    self.on_progress(message)
            return message
        except Exception:
            if self.on_error is not None:
                self.on_error(traceback.format_exc())
            return None

    def _advance(self):
        completed = self.completed + 1
        percent = completed * 100 // self.total
        if completed > self.total:
            raise RuntimeError(f"Progress overflow: {completed} files finished out of {self.total}")
        self.completed = completed
        if percent <= 0 or percent == self.last_percent:
            return None
        self.last_percent = percent
        now = self._clock()
        elapsed = (now - self.start_time).total_seconds()
        finish = self.start_time + timedelta(seconds=elapsed * 100 / percent)
        return percent, f"{percent}% - {format_duration(finish - now)} remaining"


# --------------------------
# File discovery and batching
# --------------------------

def discover_qsh_files(root: str) -> List[str]:
    if not os.path.isdir(root):
        raise NotADirectoryError(f"QSH source directory not found: {root}")
    found = []
    for dirpath, _dirs, names in os.walk(root):
        for name in names:
            if name.lower().endswith(QSH_EXTENSION):
                found.append(os.path.join(dirpath, name))
    return sorted(found)


def matches_data_kind(path: str, kind) -> bool:
    name = os.path.splitext(os.path.basename(path))[0]
    return DATA_KIND_MARKERS[DataKind(kind)] in name


def make_batches(files: List[str], batch_size: int) -> List[List[str]]:
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")
    return [list(files[i:i + batch_size]) for i in range(0, len(files), batch_size)]


_DATE_IN_NAME = re.compile(r"(\d{4}\W\d{2}\W\d{2})")


def organize_by_date(source_root: str, logger: logging.Logger) -> int:
    """Move *.OrdLog.qsh / *.Deals.qsh files lying in source_root into a folder named after the date in their name."""
    if not os.path.isdir(source_root):
        raise NotADirectoryError(f"QSH source directory not found: {source_root}")
    moved = 0
    for name in sorted(os.listdir(source_root)):
        path = os.path.join(source_root, name)
        if not os.path.isfile(path):
            continue
        if not (name.endswith(".OrdLog.qsh") or name.endswith(".Deals.qsh")):
            continue
        m = _DATE_IN_NAME.search(name)
        if not m:
            continue
        target_dir = os.path.join(source_root, m.group(1))
        os.makedirs(target_dir, exist_ok=True)
        shutil.move(path, os.path.join(target_dir, name))
        moved += 1
    logger.info(f"Moved {moved} file(s) into per-date folders under {source_root}")
    return moved


# --------------------------
# Converter
# --------------------------

class QshConverter:
    """Converts .qsh files of one data kind into stored trades and candles.

    Files are split into batches of ``batch_size``; each batch is converted
    with one worker thread per file and the next batch starts only once every
    worker of the current one has finished. A failing file is logged and
    reported through ``on_error`` and does not stop its siblings.
    """

    def __init__(self,
                 output_root: str,
                 data_kind,
                 logger: logging.Logger,
                 open_reader: Optional[Callable] = None,
                 timeframes: Optional[List[timedelta]] = None,
                 batch_size: int = BATCH_SIZE,
                 max_workers: Optional[int] = None,
                 storage=None,
                 reconstructor_factory: Optional[Callable] = None,
                 candle_builder_factory: Callable = CandleBuilder,
                 on_progress: Optional[Callable[[str], None]] = None,
                 on_error: Optional[Callable[[str], None]] = None):
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        self.logger = logger
        self.data_kind = DataKind(data_kind)
        self.batch_size = batch_size
        self.max_workers = max_workers
        self.output_root = output_root
        os.makedirs(output_root, exist_ok=True)
        self.storage = storage if storage is not None else ParquetStorage(output_root, logger)
        self.open_reader = open_reader if open_reader is not None else resolve_decoder()
        self.reconstructor_factory = reconstructor_factory if reconstructor_factory is not None else resolve_reconstructor()
        self.dispatcher = AggregateDispatcher(self.storage, timeframes, candle_builder_factory)
        self.on_progress = on_progress
        self.on_error = on_error
        self.tracker = ProgressTracker(on_progress=self._report_progress, on_error=self._report_error)

    def add_timeframes(self, timeframes: List[timedelta]):
        self.dispatcher.timeframes = list(timeframes)

    def convert(self, source_root: str) -> ConversionSummary:
        return self.convert_files(discover_qsh_files(source_root))

    def convert_files(self, files: List[str]) -> ConversionSummary:
        started = datetime.now()
        selected = [f for f in files if matches_data_kind(f, self.data_kind)]
        summary = ConversionSummary(total=len(selected))
        self.tracker.start(len(selected))
        batches = make_batches(selected, self.batch_size)
        self.logger.info(
            f"Converting {len(selected)} {self.data_kind.value} file(s) in {len(batches)} batch(es) "
            f"of up to {self.batch_size}"
        )
        for index, batch in enumerate(batches, start=1):
            self._convert_batch(batch, summary)
            self.logger.info(f"Batch {index}/{len(batches)} finished ({len(batch)} file(s))")
        save = getattr(self.storage, "save_manifest", None)
        if save is not None:
            save()
        summary.duration = datetime.now() - started
        self.logger.info(
            f"Conversion complete in {format_duration(summary.duration)}: "
            f"{summary.succeeded} converted, {len(summary.failed)} failed"
        )
        return summary

    def convert_file(self, path: str) -> List[List[TradeRecord]]:
        if self.data_kind is DataKind.ORDER_LOG:
            return read_order_log(path, self.open_reader, self.reconstructor_factory)
        return read_deals(path, self.open_reader)

    def _convert_batch(self, batch: List[str], summary: ConversionSummary):
        workers = len(batch) if self.max_workers is None else max(1, min(self.max_workers, len(batch)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="qsh") as executor:
            futures = [executor.submit(self._convert_one, path) for path in batch]
        # leaving the with-block waited for every worker of the batch
        for path, future in zip(batch, futures):
            if future.result():
                summary.succeeded += 1
            else:
                summary.failed.append(path)

    def _convert_one(self, path: str) -> bool:
        ok = False
        try:
            self.dispatcher.dispatch(self.convert_file(path))
            ok = True
        except Exception:
            self.logger.exception(f"Failed to convert {path}")
            self._report_error(f"{path}\n{traceback.format_exc()}")
        self.tracker.file_done()
        return ok

    def _report_progress(self, message: str):
        self.logger.info(f"Progress: {message}")
        if self.on_progress is not None:
            self.on_progress(message)

    def _report_error(self, message: str):
        if self.on_error is None:
            return
        try:
            self.on_error(message)
        except Exception:
            self.logger.exception("Error observer failed")


# --------------------------
# CLI
# --------------------------

def _parse_args(argv: List[str]):
    import argparse
    p = argparse.ArgumentParser(description="Convert .qsh order-log or deals history into day-partitioned Parquet trades and candles")
    p.add_argument("--quiet", action="store_true", help="Reduce console logging")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_convert = sub.add_parser("convert", help="Convert every matching .qsh file under the source directory")
    p_convert.add_argument("--source", default=DEFAULT_SOURCE_DIR, help="Directory with .qsh files (searched recursively)")
    p_convert.add_argument("--output", default=DEFAULT_OUTPUT_DIR, help="Storage root, created if missing")
    p_convert.add_argument("--kind", choices=[k.value for k in DataKind], required=True, help="Source data kind: ordlog (*OrdLog*.qsh) or deals (*Deals*.qsh)")
    p_convert.add_argument("--timeframes", nargs="*", default=[], help="Candle timeframes to derive, e.g. 1m 5m 1h. Default none.")
    p_convert.add_argument("--batch-size", type=int, default=BATCH_SIZE, help="Files converted in parallel per batch")
    p_convert.add_argument("--max-workers", type=int, default=None, help="Optional cap on threads per batch (default one per file)")
    p_convert.add_argument("--decoder", default=None, help="module:callable opening a .qsh file (default $QSH_DECODER)")
    p_convert.add_argument("--reconstructor", default=None, help="module:callable building the order-book reconstructor (default fill pairing)")
    p_convert.add_argument("--organize", action="store_true", help="First move loose files into per-date folders")

    p_status = sub.add_parser("status", help="Print storage summary")
    p_status.add_argument("--output", default=DEFAULT_OUTPUT_DIR)

    p_audit = sub.add_parser("audit", help="Check manifest vs files (sha256, row counts, orphans). Exits non-zero on failure")
    p_audit.add_argument("--output", default=DEFAULT_OUTPUT_DIR)

    return p.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(sys.argv[1:] if argv is None else argv)
    logger = setup_logging(verbose=not args.quiet)

    try:
        if args.cmd == "convert":
            timeframes = [parse_timeframe(t) for t in args.timeframes]
            converter = QshConverter(
                args.output,
                args.kind,
                logger,
                open_reader=resolve_decoder(args.decoder),
                timeframes=timeframes,
                batch_size=args.batch_size,
                max_workers=args.max_workers,
                reconstructor_factory=resolve_reconstructor(args.reconstructor),
                on_error=lambda text: logger.error(f"File failed: {text.splitlines()[0]}"),
            )
            if args.organize:
                organize_by_date(args.source, logger)
            summary = converter.convert(args.source)
            return 0 if not summary.failed else 1
        elif args.cmd == "status":
            print(json.dumps(storage_status(args.output), indent=2))
            return 0
        elif args.cmd == "audit":
            if verify_storage(args.output, logger):
                logger.info("AUDIT OK: manifest parity verified.")
                return 0
            logger.error("AUDIT FAILED.")
            return 3
    except KeyboardInterrupt:
        logger.info("Interrupted by user. The batch in flight was not finished.")
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
