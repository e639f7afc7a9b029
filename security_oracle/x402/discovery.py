"""
Resource descriptors for 402 responses and the /.well-known/x402 document.
"""
from typing import Any, Dict, List

from security_oracle.x402.types import GateConfig, ResourceDescriptor, X402_VERSION

# Input/output schemas advertised for each priced resource
OUTPUT_SCHEMAS: Dict[str, Dict[str, Any]] = {
    "/approval-audit": {
        "input": {
            "type": "http",
            "method": "GET",
            "queryParams": {
                "wallet": {"type": "string", "required": True, "description": "Wallet address to audit"},
                "chains": {
                    "type": "string",
                    "required": False,
                    "description": "Comma-separated chain IDs (e.g., 1,137,56)",
                },
            },
        },
        "output": {
            "success": {"type": "boolean", "description": "Request status"},
            "wallet": {"type": "string", "description": "Audited wallet address"},
            "approvals": {"type": "array", "description": "List of token approvals"},
            "risk_summary": {"type": "object", "description": "Risk analysis summary"},
            "timestamp": {"type": "string", "description": "Response timestamp"},
        },
    },
    "/exploits": {
        "input": {
            "type": "http",
            "method": "GET",
            "queryParams": {
                "protocol": {"type": "string", "required": False, "description": "Filter by protocol name"},
                "chain": {"type": "string", "required": False, "description": "Filter by blockchain"},
                "limit": {"type": "integer", "required": False, "description": "Maximum results (default: 50)"},
            },
        },
        "output": {
            "success": {"type": "boolean", "description": "Request status"},
            "count": {"type": "integer", "description": "Number of exploits returned"},
            "exploits": {"type": "array", "description": "List of exploit records"},
            "timestamp": {"type": "string", "description": "Response timestamp"},
        },
    },
    "/risk-score/{protocol}": {
        "input": {
            "type": "http",
            "method": "GET",
            "pathParams": {
                "protocol": {"type": "string", "required": True, "description": "Protocol name"},
            },
            "queryParams": {
                "chain": {"type": "string", "required": False, "description": "Filter by blockchain"},
            },
        },
        "output": {
            "success": {"type": "boolean", "description": "Request status"},
            "risk_score": {"type": "object", "description": "Risk assessment"},
            "data_points": {"type": "integer", "description": "Exploits analyzed"},
            "timestamp": {"type": "string", "description": "Response timestamp"},
        },
    },
}

EXTRA_FIELDS: Dict[str, Dict[str, Any]] = {
    "/exploits": {"sources_count": 2},
    "/risk-score/{protocol}": {"algorithm": "Weighted: frequency(40%) + loss(30%) + recency(30%)"},
}


class DescriptorFactory:
    """Builds ResourceDescriptors for the configured payment wallet."""

    def __init__(self, pay_to: str, provider: str, version: str, documentation: str):
        self.pay_to = pay_to
        self.provider = provider
        self.version = version
        self.documentation = documentation

    def describe(self, gate: GateConfig, base_url: str) -> ResourceDescriptor:
        """
        Create the descriptor advertised for one priced resource.

        Args:
            gate: The resource's payment requirements
            base_url: Scheme and host used to make the resource absolute
        """
        extra = {
            "provider": self.provider,
            "version": self.version,
            "documentation": self.documentation,
        }
        extra.update(EXTRA_FIELDS.get(gate.resource_path, {}))

        return ResourceDescriptor(
            max_amount_required=str(gate.required_amount_lamports),
            resource=f"{base_url.rstrip('/')}{gate.resource_path}",
            description=gate.description,
            pay_to=self.pay_to,
            output_schema=OUTPUT_SCHEMAS.get(gate.resource_path),
            extra=extra,
        )

    def discovery_document(self, gates: List[GateConfig], base_url: str) -> Dict[str, Any]:
        """The body served (with status 402) at /.well-known/x402."""
        return {
            "x402Version": X402_VERSION,
            "accepts": [
                self.describe(gate, base_url).model_dump(by_alias=True, exclude_none=True)
                for gate in gates
            ],
        }
