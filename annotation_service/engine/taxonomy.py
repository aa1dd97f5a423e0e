from functools import lru_cache
from typing import Dict, List, Optional, Any

from .lexicon import load_yaml_resource


class Taxonomy:
    """Closed set of semantic-domain codes accepted from the classifier"""

    def __init__(self, data: Dict[str, Any]):
        self.sentinel: str = data.get("sentinel", "NC")
        self.grammatical_marker: str = data.get("grammatical_marker", "MG")
        self.domains: Dict[str, str] = {str(k): str(v) for k, v in (data.get("domains") or {}).items()}
        self.subdomains: Dict[str, str] = {str(k): str(v) for k, v in (data.get("subdomains") or {}).items()}
        self.domains.setdefault(self.sentinel, "Unclassified")

    @property
    def codes(self) -> List[str]:
        return list(self.domains) + list(self.subdomains)

    def is_valid(self, code: Optional[str]) -> bool:
        return bool(code) and (code in self.domains or code in self.subdomains)

    def normalize(self, code: Optional[str]) -> str:
        """Return the code unchanged if it is known, otherwise the sentinel"""
        code = (code or "").strip().upper()
        return code if self.is_valid(code) else self.sentinel

    def describe(self) -> str:
        lines = ["N1 domains:"]
        lines.extend(f"- {code}: {label}" for code, label in self.domains.items())
        if self.subdomains:
            lines.append("")
            lines.append("Subdomains (more specific, prefer them when they fit):")
            lines.extend(f"- {code}: {label}" for code, label in self.subdomains.items())
        return "\n".join(lines)


@lru_cache(maxsize=8)
def get_taxonomy(resources_path: Optional[str] = None) -> Taxonomy:
    return Taxonomy(load_yaml_resource("taxonomy.yaml", resources_path))
