"""
Encoding family: pure, reversible-where-possible payload transforms.

Every variant here is a deterministic function of the payload; none of them
touch the request shape. Round-trips are guaranteed for url_single,
url_double, hex_escape and base64.
"""

from __future__ import annotations

import base64
import string
from typing import Dict, List

from ..contracts.enums import MutationFamily
from .base import MutationContext, MutationFamilyBase, VariantSpec


_NAMED_ENTITIES: Dict[str, str] = {
    "<": "&lt;",
    ">": "&gt;",
    '"': "&quot;",
    "'": "&#39;",
    "&": "&amp;",
    "/": "&#47;",
    "=": "&#61;",
}

# RFC 2152 "direct" characters; everything else goes through modified base64
_UTF7_DIRECT = frozenset(string.ascii_letters + string.digits + "'(),-./:? \t\r\n")


def _js_number(n: int) -> str:
    if n == 0:
        return "+[]"
    if n == 1:
        return "+!+[]"
    return "+".join(["!+[]"] * n)


# Strings reachable from primitives using only []()!+
_JS_SOURCES = [
    ("(![]+[])", "false"),
    ("(!![]+[])", "true"),
    ("([][[]]+[])", "undefined"),
    ("(+[![]]+[])", "NaN"),
    ("([]+{})", "[object Object]"),
]


def _build_js_alphabet() -> Dict[str, str]:
    table: Dict[str, str] = {}
    for digit in range(10):
        table[str(digit)] = f"({_js_number(digit)}+[])"
    for expr, text in _JS_SOURCES:
        for index, char in enumerate(text):
            table.setdefault(char, f"{expr}[{_js_number(index)}]")
    return table


_JS_ALPHABET = _build_js_alphabet()


class EncodingFamily(MutationFamilyBase):
    family = MutationFamily.ENCODING

    SPECS = {
        spec.name: spec
        for spec in [
            VariantSpec("url_single", "Percent-encode every non-alphanumeric byte", "WAF signature matching", 1),
            VariantSpec("url_double", "Percent-encode twice (%25XX)", "WAF single-decode normalization", 2),
            VariantSpec("html_entity_named", "Named HTML entities for markup characters", "XSS filter", 2),
            VariantSpec("html_entity_decimal", "Decimal HTML entities (&#N;)", "XSS filter", 2),
            VariantSpec("html_entity_hex", "Hex HTML entities (&#xHH;)", "XSS filter", 2),
            VariantSpec("html_entity_mixed", "Alternating decimal and hex HTML entities", "XSS filter pattern matching", 3),
            VariantSpec("unicode_escape", "JavaScript \\uXXXX escapes", "JavaScript context filter", 3),
            VariantSpec("unicode_fullwidth", "Fullwidth Unicode forms of ASCII", "character filter normalization", 3),
            VariantSpec("hex_escape", "\\xHH escape per UTF-8 byte", "character filter", 2),
            VariantSpec("base64", "Standard base64 with padding", "keyword filter", 2),
            VariantSpec("base64_wrapped", "Base64 wrapped in eval(atob(...))", "XSS keyword filter", 4),
            VariantSpec("utf7", "UTF-7 with markup characters base64-shifted", "charset confusion", 5),
            VariantSpec("overlong_utf8", "Overlong two-byte UTF-8 percent sequences", "path traversal filter", 5),
            VariantSpec("jsfuck", "Obfuscated JavaScript built from []()!+", "XSS keyword filter", 8),
            VariantSpec("mixed_case", "Alternating lower/upper case", "case-sensitive keyword filter", 1),
            VariantSpec("null_byte_prefix", "Prefix with %00", "string termination check", 2),
            VariantSpec("null_byte_suffix", "Suffix with %00", "extension check", 2),
        ]
    }

    @staticmethod
    def _url_single(payload: str, context: MutationContext) -> str:
        out: List[str] = []
        for byte in payload.encode("utf-8"):
            char = chr(byte)
            if char.isascii() and char.isalnum():
                out.append(char)
            else:
                out.append(f"%{byte:02X}")
        return "".join(out)

    @classmethod
    def _url_double(cls, payload: str, context: MutationContext) -> str:
        return cls._url_single(payload, context).replace("%", "%25")

    @staticmethod
    def _html_entity_named(payload: str, context: MutationContext) -> str:
        return "".join(_NAMED_ENTITIES.get(c, c) for c in payload)

    @staticmethod
    def _html_entity_decimal(payload: str, context: MutationContext) -> str:
        return "".join(f"&#{ord(c)};" for c in payload)

    @staticmethod
    def _html_entity_hex(payload: str, context: MutationContext) -> str:
        return "".join(f"&#x{ord(c):X};" for c in payload)

    @staticmethod
    def _html_entity_mixed(payload: str, context: MutationContext) -> str:
        return "".join(
            f"&#{ord(c)};" if i % 2 == 0 else f"&#x{ord(c):x};"
            for i, c in enumerate(payload)
        )

    @staticmethod
    def _unicode_escape(payload: str, context: MutationContext) -> str:
        out: List[str] = []
        for char in payload:
            cp = ord(char)
            if cp > 0xFFFF:
                cp -= 0x10000
                out.append(f"\\u{0xD800 + (cp >> 10):04x}\\u{0xDC00 + (cp & 0x3FF):04x}")
            else:
                out.append(f"\\u{cp:04x}")
        return "".join(out)

    @staticmethod
    def _unicode_fullwidth(payload: str, context: MutationContext) -> str:
        out: List[str] = []
        for char in payload:
            cp = ord(char)
            if 0x21 <= cp <= 0x7E:
                out.append(chr(cp + 0xFEE0))
            elif cp == 0x20:
                out.append("\u3000")
            else:
                out.append(char)
        return "".join(out)

    @staticmethod
    def _hex_escape(payload: str, context: MutationContext) -> str:
        return "".join(f"\\x{byte:02x}" for byte in payload.encode("utf-8"))

    @staticmethod
    def _base64(payload: str, context: MutationContext) -> str:
        return base64.b64encode(payload.encode("utf-8")).decode("ascii")

    @classmethod
    def _base64_wrapped(cls, payload: str, context: MutationContext) -> str:
        return f"eval(atob('{cls._base64(payload, context)}'))"

    @staticmethod
    def _utf7(payload: str, context: MutationContext) -> str:
        out: List[str] = []
        run: List[str] = []

        def flush() -> None:
            if run:
                raw = "".join(run).encode("utf-16-be")
                out.append("+" + base64.b64encode(raw).decode("ascii").rstrip("=") + "-")
                run.clear()

        for char in payload:
            if char == "+":
                flush()
                out.append("+-")
            elif char in _UTF7_DIRECT:
                flush()
                out.append(char)
            else:
                run.append(char)
        flush()
        return "".join(out)

    @staticmethod
    def _overlong_utf8(payload: str, context: MutationContext) -> str:
        out: List[str] = []
        for char in payload:
            cp = ord(char)
            if cp < 0x80:
                out.append(f"%{0xC0 | (cp >> 6):02X}%{0x80 | (cp & 0x3F):02X}")
            else:
                out.append("".join(f"%{b:02X}" for b in char.encode("utf-8")))
        return "".join(out)

    @staticmethod
    def _jsfuck(payload: str, context: MutationContext) -> str:
        # Characters outside the primitive alphabet fall back to String.fromCharCode
        parts = [_JS_ALPHABET.get(c) or f"String.fromCharCode({ord(c)})" for c in payload]
        if not parts:
            return "[]+[]"
        return "[]+" + "+".join(parts)

    @staticmethod
    def _mixed_case(payload: str, context: MutationContext) -> str:
        return "".join(c.upper() if i % 2 else c.lower() for i, c in enumerate(payload))

    @staticmethod
    def _null_byte_prefix(payload: str, context: MutationContext) -> str:
        return f"%00{payload}"

    @staticmethod
    def _null_byte_suffix(payload: str, context: MutationContext) -> str:
        return f"{payload}%00"


__all__ = ["EncodingFamily"]
