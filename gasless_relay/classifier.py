"""
Receipt classification.

Turns the raw log entries of an execution into typed events by decoding
each one against the ABI of the contract that emitted it. Classification
is total: every input entry yields exactly one ClassifiedEvent, in order,
and a malformed entry never stops the rest from being classified.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from eth_abi import decode as abi_decode
from eth_utils import (
    collapse_if_tuple, event_abi_to_log_topic, function_abi_to_4byte_selector
)
from web3 import Web3

from .models import ClassifiedEvent, EventCategory, LogEntry, LogInput


class EventShapeError(ValueError):
    """Raised when a log's topics or data do not fit an event schema."""
    pass


@dataclass
class KnownEmitter:
    """
    A contract whose logs the classifier recognizes.

    Attributes:
        address: Contract address
        label: Short name reported on classified events (e.g. "NFT")
        abi: Contract ABI; may be empty for collaborators without a registered schema
    """
    address: str
    label: str
    abi: List[Dict[str, Any]] = field(default_factory=list)

    def __post_init__(self):
        self.address = Web3.to_checksum_address(self.address)
        self._events: Dict[bytes, List[Dict[str, Any]]] = {}
        self._functions: Dict[bytes, Dict[str, Any]] = {}
        for item in self.abi:
            if item.get("type") == "event" and not item.get("anonymous"):
                self._events.setdefault(event_abi_to_log_topic(item), []).append(item)
            elif item.get("type") == "function":
                self._functions[function_abi_to_4byte_selector(item)] = item

    @property
    def has_schema(self) -> bool:
        return bool(self._events)

    def events_for(self, topic0: bytes) -> List[Dict[str, Any]]:
        return self._events.get(topic0, [])

    def function_for(self, selector: bytes) -> Optional[Dict[str, Any]]:
        return self._functions.get(selector)


class EmitterRegistry:
    """Known emitters keyed by checksummed address"""

    def __init__(self, emitters: Iterable[KnownEmitter] = ()):
        self._emitters: Dict[str, KnownEmitter] = {}
        for emitter in emitters:
            self._emitters[emitter.address] = emitter

    def register(self, address: str, label: str, abi: Optional[List[Dict[str, Any]]] = None) -> KnownEmitter:
        """
        Register a contract as a known emitter.

        Args:
            address: Contract address
            label: Label reported on its events
            abi: Optional ABI used to decode its events and calls

        Returns:
            The registered emitter
        """
        emitter = KnownEmitter(address=address, label=label, abi=list(abi or []))
        self._emitters[emitter.address] = emitter
        return emitter

    def get(self, address: str) -> Optional[KnownEmitter]:
        if not Web3.is_address(address):
            return None
        return self._emitters.get(Web3.to_checksum_address(address))

    def __contains__(self, address: str) -> bool:
        return self.get(address) is not None

    def __iter__(self):
        return iter(self._emitters.values())

    def __len__(self) -> int:
        return len(self._emitters)


class ReceiptClassifier:
    """Classifies execution logs against an EmitterRegistry"""

    def __init__(self, registry: EmitterRegistry):
        self.registry = registry

    def classify(self, log_entries: Sequence[LogInput]) -> List[ClassifiedEvent]:
        """
        Classify log entries in order.

        Args:
            log_entries: LogEntry models or raw log dicts (``address``/``emitter``,
                ``topics``, ``data``)

        Returns:
            One ClassifiedEvent per input entry, in input order
        """
        return [self._classify_one(index, entry) for index, entry in enumerate(log_entries)]

    def decode_call(self, to: str, data: bytes) -> Optional[Tuple[str, Dict[str, Any]]]:
        """
        Decode calldata sent to a registered contract.

        Args:
            to: Target contract address
            data: Calldata

        Returns:
            (function name, args) or None if the target or selector is unknown
            or the arguments do not decode
        """
        emitter = self.registry.get(to)
        if emitter is None or len(data) < 4:
            return None
        fn_abi = emitter.function_for(bytes(data[:4]))
        if fn_abi is None:
            return None
        inputs = fn_abi.get("inputs", [])
        try:
            values = abi_decode([collapse_if_tuple(i) for i in inputs], bytes(data[4:]))
        except Exception:
            return None
        return fn_abi["name"], {
            _arg_name(i, n): _normalize(collapse_if_tuple(i), v)
            for n, (i, v) in enumerate(zip(inputs, values))
        }

    def _classify_one(self, index: int, entry: LogInput) -> ClassifiedEvent:
        try:
            log = entry if isinstance(entry, LogEntry) else _coerce_log(entry)
            emitter = self.registry.get(log.emitter)
            if emitter is None:
                return ClassifiedEvent(
                    index=index,
                    emitter=log.emitter,
                    category=EventCategory.FROM_UNKNOWN_EMITTER,
                    topics=_render_topics(log.topics),
                    data=_render(log.data)
                )

            unknown = ClassifiedEvent(
                index=index,
                emitter=log.emitter,
                category=EventCategory.UNKNOWN_FROM_KNOWN_EMITTER,
                label=emitter.label,
                topics=_render_topics(log.topics),
                data=_render(log.data)
            )
            if not emitter.has_schema or not log.topics:
                return unknown
            for topic in log.topics:
                if len(topic) != 32:
                    raise EventShapeError(f"topic is {len(topic)} bytes, expected 32")
            candidates = emitter.events_for(bytes(log.topics[0]))
            if not candidates:
                return unknown

            errors = []
            for event_abi in candidates:
                try:
                    args = _decode_event(event_abi, log.topics, log.data)
                except Exception as e:
                    errors.append(f"{event_abi['name']}: {e}")
                    continue
                return ClassifiedEvent(
                    index=index,
                    emitter=log.emitter,
                    category=EventCategory.KNOWN_EVENT,
                    label=emitter.label,
                    name=event_abi["name"],
                    args=args
                )
            raise EventShapeError("; ".join(errors))
        except Exception as e:
            return _unparseable(index, entry, e)


def classify(log_entries: Sequence[LogInput], known_emitters: Iterable[KnownEmitter]) -> List[ClassifiedEvent]:
    """Classify log entries against a set of known emitters."""
    return ReceiptClassifier(EmitterRegistry(known_emitters)).classify(log_entries)


def _coerce_log(entry: Any) -> LogEntry:
    if not isinstance(entry, dict):
        raise EventShapeError(f"log entry must be a mapping, got {type(entry).__name__}")
    emitter = entry.get("emitter", entry.get("address"))
    return LogEntry(emitter=emitter, topics=list(entry.get("topics") or []), data=entry.get("data") or b"")


def _decode_event(event_abi: Dict[str, Any], topics: List[bytes], data: bytes) -> Dict[str, Any]:
    inputs = event_abi.get("inputs", [])
    indexed = [i for i in inputs if i.get("indexed")]
    plain = [i for i in inputs if not i.get("indexed")]
    if len(topics) - 1 != len(indexed):
        raise EventShapeError(f"expected {len(indexed)} indexed topics, got {len(topics) - 1}")

    topic_values = iter(topics[1:])
    data_values = iter(abi_decode([collapse_if_tuple(i) for i in plain], bytes(data)))

    # Arguments come back in declaration order
    args: Dict[str, Any] = {}
    for position, abi_input in enumerate(inputs):
        type_str = collapse_if_tuple(abi_input)
        if not abi_input.get("indexed"):
            value = _normalize(type_str, next(data_values))
        elif _is_dynamic(type_str):
            # Indexed dynamic values are stored as their keccak hash
            value = _render(next(topic_values))
        else:
            value = _normalize(type_str, abi_decode([type_str], bytes(next(topic_values)))[0])
        args[_arg_name(abi_input, position)] = value
    return args


def _arg_name(abi_input: Dict[str, Any], position: int) -> str:
    return abi_input.get("name") or f"arg{position}"


def _is_dynamic(type_str: str) -> bool:
    return type_str in ("string", "bytes") or type_str.endswith("]") or type_str.startswith("(")


def _normalize(type_str: str, value: Any) -> Any:
    if type_str == "address":
        return Web3.to_checksum_address(value)
    if type_str.endswith("]") and isinstance(value, (list, tuple)):
        inner = type_str[:type_str.rindex("[")]
        return [_normalize(inner, v) for v in value]
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if isinstance(value, tuple):
        return [_normalize("", v) for v in value]
    return value


def _render(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return str(value)


def _render_topics(topics: Any) -> Optional[List[str]]:
    if topics is None:
        return None
    if isinstance(topics, (list, tuple)):
        return [_render(t) for t in topics]
    return [_render(topics)]


def _unparseable(index: int, entry: Any, error: Exception) -> ClassifiedEvent:
    if isinstance(entry, LogEntry):
        emitter, topics, data = entry.emitter, entry.topics, entry.data
    elif isinstance(entry, dict):
        emitter = entry.get("emitter", entry.get("address"))
        topics, data = entry.get("topics"), entry.get("data")
    else:
        emitter, topics, data = None, None, None
    return ClassifiedEvent(
        index=index,
        emitter=_render(emitter),
        category=EventCategory.UNPARSEABLE,
        decode_error=str(error) or type(error).__name__,
        topics=_render_topics(topics),
        data=_render(data)
    )
