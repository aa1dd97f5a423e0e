"""
Loaders for the closed-class lexicon and the multi-word expression tables.

Both live as YAML files under the resources directory so linguists can extend
them without touching code. Loaded tables are memoized per path.
"""
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional, Any, Tuple
import re
import logging

import yaml

from ..core.config import settings

logger = logging.getLogger(__name__)

PRONOUN_TAGS = {
    "personal": "PRON_PERS",
    "oblique": "PRON_OBL",
    "treatment": "PRON_TRAT",
    "possessive": "PRON_POSS",
    "demonstrative": "PRON_DEM",
    "indefinite": "PRON_IND",
    "relative": "PRON_REL",
    "interrogative": "PRON_INT",
}


def load_yaml_resource(name: str, resources_path: Optional[str] = None) -> Dict[str, Any]:
    path = Path(resources_path or settings.RESOURCES_PATH) / name
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    logger.debug("Loaded resource %s", path)
    return data


class GrammarLexicon:
    """Closed-form lookup tables used by the rule-based grammar layer"""

    def __init__(self, data: Dict[str, Any]):
        self.auxiliary_verbs = set(data.get("auxiliary_verbs", []))

        # conjugated form -> infinitive; the first verb listing a form keeps it
        self.conjugations: Dict[str, str] = {}
        for infinitive, forms in (data.get("irregular_verbs") or {}).items():
            for form in forms:
                self.conjugations.setdefault(str(form).lower(), infinitive)

        # pronoun -> detailed tag, in table order
        self.pronouns: Dict[str, str] = {}
        for group, tag in PRONOUN_TAGS.items():
            for pronoun in (data.get("pronouns") or {}).get(group, []):
                self.pronouns.setdefault(str(pronoun).lower(), tag)

        self.determiners: Dict[str, Dict[str, str]] = {
            str(k).lower(): dict(v or {}) for k, v in (data.get("determiners") or {}).items()
        }
        self.prepositions = {str(w).lower() for w in data.get("prepositions", [])}
        self.conjunctions = {str(w).lower() for w in data.get("conjunctions", [])}
        self.adverbs = {str(w).lower() for w in data.get("adverbs", [])}
        self.suffix_rules: List[Dict[str, Any]] = list(data.get("suffix_rules", []))


class MWEPatterns:
    """Fixed multi-word expressions plus regex templates"""

    def __init__(self, data: Dict[str, Any]):
        fixed = data.get("fixed") or {}
        # longest first, then alphabetical, so scanning order never depends on file order
        self.fixed: List[Tuple[str, Dict[str, str], "re.Pattern[str]"]] = []
        for expression in sorted(fixed, key=lambda e: (-len(e), e)):
            entry = fixed[expression] or {}
            regex = re.compile(r"\b" + re.escape(expression) + r"\b", re.IGNORECASE)
            self.fixed.append((expression.lower(), entry, regex))

        self.templates: List[Tuple[str, str, "re.Pattern[str]"]] = []
        for template in data.get("templates", []):
            regex = re.compile(template["pattern"], re.IGNORECASE)
            self.templates.append((template.get("name", template["pattern"]), template["pos"], regex))


@lru_cache(maxsize=8)
def get_grammar_lexicon(resources_path: Optional[str] = None) -> GrammarLexicon:
    return GrammarLexicon(load_yaml_resource("grammar.yaml", resources_path))


@lru_cache(maxsize=8)
def get_mwe_patterns(resources_path: Optional[str] = None) -> MWEPatterns:
    return MWEPatterns(load_yaml_resource("mwe.yaml", resources_path))
