"""
Structural family: effect-preserving obfuscations of payload shape and
request framing.

Randomized choices draw from the injected ``random.Random`` so a seeded
engine produces the same mutations on every run.
"""

from __future__ import annotations

import json
import logging
from typing import Dict, List, Optional, Tuple
from urllib.parse import quote

from ..contracts.enums import InjectionPoint, MutationFamily
from .base import Mutation, MutationContext, MutationFamilyBase, VariantSpec

logger = logging.getLogger(__name__)


CASE_STRATEGIES = ("upper", "lower", "alternating", "random", "capitalize")

WHITESPACE_CHARS = (" ", "\t", "\n", "\r", "\x0b", "\x0c")
WHITESPACE_PROBABILITY = 0.3

# language -> (open, close); close=None means prefix only
COMMENT_STYLES: Dict[str, Tuple[str, Optional[str]]] = {
    "sql": ("/*!50000", "*/"),
    "mysql": ("/*!50000", "*/"),
    "html": ("<!---->", None),
    "xml": ("<!---->", None),
    "javascript": ("/**/", None),
    "css": ("/**/", None),
    "php": ("/**/", None),
}
DEFAULT_COMMENT_LANGUAGE = "sql"

POLLUTION_STRATEGIES = ("duplicate", "array", "decoy_first", "decoy_last", "encoded_duplicate")

VERB_STRATEGIES: Tuple[Tuple[str, str], ...] = (
    ("POST", "X-HTTP-Method-Override"),
    ("POST", "X-HTTP-Method"),
    ("POST", "X-Method-Override"),
    ("PUT", "X-HTTP-Method-Override"),
    ("PATCH", "X-HTTP-Method-Override"),
)

CONTENT_TYPES = (
    "application/json",
    "application/xml",
    "multipart/form-data",
    "application/x-www-form-urlencoded",
    "text/plain",
)
MULTIPART_BOUNDARY = "----PivotBoundary7MA4YWxk"

HOST_STRATEGIES = ("localhost", "127.0.0.1", "0.0.0.0", "[::1]", "internal")


class StructuralFamily(MutationFamilyBase):
    family = MutationFamily.STRUCTURAL

    SPECS = {
        spec.name: spec
        for spec in [
            VariantSpec("case_variation", "Rewrite letter case with one of five strategies", "case-sensitive keyword filter", 1),
            VariantSpec("whitespace_injection", "Insert alternative whitespace between characters", "tokenizer-based filter", 3),
            VariantSpec("comment_injection", "Wrap or prefix with a language comment", "SQL keyword filter", 3),
            VariantSpec("parameter_pollution", "Repeat the parameter so parsers disagree", "parameter inspection", 4),
            VariantSpec("http_verb_tampering", "Switch verb with a method-override header", "method-based access control", 3),
            VariantSpec("content_type_switching", "Re-frame the payload under another content type", "body parser inspection", 4),
            VariantSpec("chunked_encoding", "Frame the payload as HTTP chunks", "body inspection buffering", 5),
            VariantSpec("host_header_manipulation", "Replace the Host header", "virtual-host routing rules", 3),
        ]
    }

    def _case_variation(self, payload: str, context: MutationContext) -> str:
        strategy = self.rng.choice(CASE_STRATEGIES)
        logger.debug(f"[Structural] case_variation picked {strategy}")
        return self.case_variant(payload, strategy)

    def case_variant(self, payload: str, strategy: str) -> str:
        if strategy == "upper":
            return payload.upper()
        if strategy == "lower":
            return payload.lower()
        if strategy == "alternating":
            return "".join(c.upper() if i % 2 == 0 else c.lower() for i, c in enumerate(payload))
        if strategy == "random":
            return "".join(c.upper() if self.rng.random() < 0.5 else c.lower() for c in payload)
        if strategy == "capitalize":
            return payload[:1].upper() + payload[1:].lower()
        raise ValueError(f"unknown case strategy: {strategy}")

    def _whitespace_injection(self, payload: str, context: MutationContext) -> str:
        out: List[str] = []
        for i, char in enumerate(payload):
            out.append(char)
            if i < len(payload) - 1 and self.rng.random() < WHITESPACE_PROBABILITY:
                out.append(self.rng.choice(WHITESPACE_CHARS))
        return "".join(out)

    @staticmethod
    def _comment_injection(payload: str, context: MutationContext) -> str:
        language = (context.language or DEFAULT_COMMENT_LANGUAGE).lower()
        opener, closer = COMMENT_STYLES.get(language, COMMENT_STYLES[DEFAULT_COMMENT_LANGUAGE])
        if closer is None:
            return f"{opener}{payload}"
        return f"{opener}{payload}{closer}"

    def _parameter_pollution(self, payload: str, context: MutationContext) -> Mutation:
        strategy = self.rng.choice(POLLUTION_STRATEGIES)
        logger.debug(f"[Structural] parameter_pollution picked {strategy}")
        polluted = self.pollute(payload, context.param_name or "id", strategy)
        return self._shaped("parameter_pollution", polluted, injection_point=InjectionPoint.RAW_QUERY)

    @staticmethod
    def pollute(payload: str, name: str, strategy: str) -> str:
        if strategy == "duplicate":
            return f"{name}={payload}&{name}={payload}"
        if strategy == "array":
            return f"{name}[]={payload}&{name}[]={payload}"
        if strategy == "decoy_first":
            return f"{name}=1&{name}={payload}"
        if strategy == "decoy_last":
            return f"{name}={payload}&{name}=1"
        if strategy == "encoded_duplicate":
            return f"{name}={payload}&{quote(name, safe='')}={quote(payload, safe='')}"
        raise ValueError(f"unknown pollution strategy: {strategy}")

    def _http_verb_tampering(self, payload: str, context: MutationContext) -> Mutation:
        original = (context.method or "GET").upper()
        candidates = [s for s in VERB_STRATEGIES if s[0] != original] or list(VERB_STRATEGIES)
        verb, header = self.rng.choice(candidates)
        return self._shaped("http_verb_tampering", payload, method=verb, headers={header: original})

    def _content_type_switching(self, payload: str, context: MutationContext) -> Mutation:
        candidates = [ct for ct in CONTENT_TYPES if ct != context.content_type]
        content_type = self.rng.choice(candidates)
        body = self.frame_body(payload, context.param_name or "data", content_type)
        if content_type == "multipart/form-data":
            content_type = f"{content_type}; boundary={MULTIPART_BOUNDARY}"
        return self._shaped(
            "content_type_switching",
            body,
            content_type=content_type,
            injection_point=InjectionPoint.BODY,
        )

    @staticmethod
    def frame_body(payload: str, name: str, content_type: str) -> str:
        if content_type == "application/json":
            return json.dumps({name: payload})
        if content_type == "application/xml":
            return f"<?xml version=\"1.0\"?><{name}>{payload}</{name}>"
        if content_type == "multipart/form-data":
            return (
                f"--{MULTIPART_BOUNDARY}\r\n"
                f"Content-Disposition: form-data; name=\"{name}\"\r\n\r\n"
                f"{payload}\r\n"
                f"--{MULTIPART_BOUNDARY}--\r\n"
            )
        if content_type == "application/x-www-form-urlencoded":
            return f"{name}={quote(payload, safe='')}"
        return payload

    @staticmethod
    def _chunked_encoding(payload: str, context: MutationContext) -> str:
        size = max(1, len(payload) // 3)
        chunks = [payload[i:i + size] for i in range(0, len(payload), size)]
        framed = "".join(f"{len(chunk.encode('utf-8')):x}\r\n{chunk}\r\n" for chunk in chunks)
        return f"{framed}0\r\n\r\n"

    def _host_header_manipulation(self, payload: str, context: MutationContext) -> Mutation:
        candidates = [h for h in HOST_STRATEGIES if h != context.host]
        host = self.rng.choice(candidates)
        return self._shaped("host_header_manipulation", payload, headers={"Host": host})


__all__ = [
    "CASE_STRATEGIES",
    "COMMENT_STYLES",
    "CONTENT_TYPES",
    "HOST_STRATEGIES",
    "POLLUTION_STRATEGIES",
    "StructuralFamily",
]
