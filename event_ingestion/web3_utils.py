import re
from dataclasses import dataclass

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from hexbytes import HexBytes
from web3 import Web3


class DecodeError(Exception):
    pass


# -----------------------------
# JSON safe serialization
# -----------------------------
def to_json_safe(obj):
    if isinstance(obj, (bytes, bytearray, HexBytes)):
        return "0x" + bytes(obj).hex()
    elif isinstance(obj, dict):
        return {k: to_json_safe(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [to_json_safe(v) for v in obj]
    else:
        return obj


def hex_to_int(x):
    if x is None:
        return None
    if isinstance(x, int):
        return x
    if isinstance(x, (bytes, bytearray)):
        return int.from_bytes(x, "big")
    s = str(x)
    return int(s, 16) if s.startswith("0x") else int(s)


def hex_to_bytes(x) -> bytes:
    if isinstance(x, (bytes, bytearray)):
        return bytes(x)
    s = str(x)
    s = s[2:] if s.startswith("0x") else s
    return bytes.fromhex(s)


# -----------------------------
# Event signatures
# "Transfer(address indexed from, address indexed to, uint256 value)"
# -----------------------------
_SIGNATURE_RE = re.compile(r"^\s*(?:event\s+)?([A-Za-z_][A-Za-z0-9_]*)\s*\((.*)\)\s*;?\s*$")
_TYPE_RE = re.compile(r"^(u?int\d*|address|bool|bytes\d*|string)(\[\d*\])*$")


@dataclass(frozen=True)
class EventInput:
    name: str
    type: str
    indexed: bool

    @property
    def is_dynamic(self) -> bool:
        return self.type in ("string", "bytes") or self.type.endswith("]")


@dataclass(frozen=True)
class EventSchema:
    """
    Decoder for one event kind, parsed from a human-readable signature.

    Indexed dynamic values (string, bytes, arrays) are only present as
    their keccak hash in the topic and are returned as hex.
    """
    name: str
    inputs: tuple[EventInput, ...]

    @classmethod
    def from_signature(cls, signature: str) -> "EventSchema":
        match = _SIGNATURE_RE.match(signature)
        if not match:
            raise ValueError(f"invalid event signature: {signature!r}")
        name, body = match.groups()

        inputs = []
        for i, part in enumerate(p.strip() for p in body.split(",") if p.strip()):
            tokens = part.split()
            typ = _normalize_type(tokens[0])
            if not _TYPE_RE.match(typ):
                raise ValueError(f"unsupported ABI type {tokens[0]!r} in {signature!r}")
            indexed = "indexed" in tokens[1:]
            names = [t for t in tokens[1:] if t != "indexed"]
            inputs.append(EventInput(
                name=names[0] if names else f"arg{i}",
                type=typ,
                indexed=indexed,
            ))

        if sum(1 for x in inputs if x.indexed) > 3:
            raise ValueError(f"more than 3 indexed inputs in {signature!r}")
        return cls(name=name, inputs=tuple(inputs))

    @property
    def canonical_signature(self) -> str:
        return f"{self.name}({','.join(x.type for x in self.inputs)})"

    @property
    def topic0(self) -> str:
        return Web3.to_hex(Web3.keccak(text=self.canonical_signature))

    def decode(self, raw_log: dict) -> dict:
        topics = [str(t).lower() for t in raw_log.get("topics") or []]
        if not topics or topics[0] != self.topic0:
            raise DecodeError(f"topic0 mismatch for {self.name}")

        indexed = [x for x in self.inputs if x.indexed]
        plain = [x for x in self.inputs if not x.indexed]
        if len(topics) - 1 != len(indexed):
            raise DecodeError(
                f"{self.name}: expected {len(indexed)} indexed topics, got {len(topics) - 1}"
            )

        payload = {}
        try:
            for inp, topic in zip(indexed, topics[1:]):
                if inp.is_dynamic:
                    payload[inp.name] = topic
                else:
                    (value,) = abi_decode([inp.type], hex_to_bytes(topic))
                    payload[inp.name] = _normalize_value(inp.type, value)

            values = abi_decode([x.type for x in plain], hex_to_bytes(raw_log.get("data") or "0x"))
            for inp, value in zip(plain, values):
                payload[inp.name] = _normalize_value(inp.type, value)
        except (DecodingError, ValueError, TypeError, OverflowError) as e:
            raise DecodeError(f"{self.name}: {e}") from e

        return payload


def _normalize_type(typ: str) -> str:
    if typ == "uint":
        return "uint256"
    if typ == "int":
        return "int256"
    return typ


def _normalize_value(typ: str, value):
    if typ == "address":
        return Web3.to_checksum_address(value)
    if typ.endswith("]"):
        inner = typ[: typ.rindex("[")]
        return [_normalize_value(inner, v) for v in value]
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return value
