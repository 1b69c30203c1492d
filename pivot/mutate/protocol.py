"""Protocol family: header and framing tricks at the HTTP layer."""

from __future__ import annotations

from typing import Dict

from ..contracts.enums import InjectionPoint, MutationFamily
from .base import Mutation, MutationContext, MutationFamilyBase, VariantSpec
from .structural import HOST_STRATEGIES

H2C_UPGRADE_HEADERS: Dict[str, str] = {
    "Upgrade": "h2c",
    "Connection": "Upgrade, HTTP2-Settings",
    "HTTP2-Settings": "AAMAAABkAARAAAAAAAIAAAAA",
}

# Client-identity headers commonly trusted by edge filters
SPOOF_HEADERS: Dict[str, str] = {
    "X-Forwarded-For": "127.0.0.1",
    "X-Real-IP": "127.0.0.1",
    "X-Originating-IP": "127.0.0.1",
    "X-Remote-Addr": "127.0.0.1",
    "X-Client-IP": "127.0.0.1",
    "True-Client-IP": "127.0.0.1",
}

STREAM_CHUNK_SIZE = 4


class ProtocolFamily(MutationFamilyBase):
    family = MutationFamily.PROTOCOL

    SPECS = {
        spec.name: spec
        for spec in [
            VariantSpec("http_version_switch", "Request an h2c protocol upgrade", "HTTP/1.1-only inspection", 4),
            VariantSpec("header_injection", "Add client-IP spoofing headers", "IP allowlists and rate keys", 2),
            VariantSpec("chunked_encoding", "Stream the body with Transfer-Encoding: chunked", "content-length based inspection", 5),
            VariantSpec("host_manipulation", "Override Host and X-Forwarded-Host", "virtual-host routing rules", 3),
        ]
    }

    def _http_version_switch(self, payload: str, context: MutationContext) -> Mutation:
        return self._shaped("http_version_switch", payload, headers=dict(H2C_UPGRADE_HEADERS))

    def _header_injection(self, payload: str, context: MutationContext) -> Mutation:
        return self._shaped("header_injection", payload, headers=dict(SPOOF_HEADERS))

    def _chunked_encoding(self, payload: str, context: MutationContext) -> Mutation:
        return self._shaped(
            "chunked_encoding",
            payload,
            chunk_size=STREAM_CHUNK_SIZE,
            injection_point=InjectionPoint.BODY,
        )

    def _host_manipulation(self, payload: str, context: MutationContext) -> Mutation:
        candidates = [h for h in HOST_STRATEGIES if h != context.host]
        host = self.rng.choice(candidates)
        headers = {"Host": host, "X-Forwarded-Host": host}
        return self._shaped("host_manipulation", payload, headers=headers)


__all__ = ["ProtocolFamily"]
