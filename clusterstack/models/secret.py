from dataclasses import dataclass, field
from typing import Dict, List


@dataclass(frozen=True)
class SecretSpec:
    """Template for a generated credential stored as a JSON document."""

    name: str
    template: Dict[str, str] = field(default_factory=dict)
    generate_key: str = "password"
    description: str = ""
    exclude_punctuation: bool = True
    include_space: bool = False
    exclude_characters: str = ""
    password_length: int = 32

    @property
    def fields(self) -> List[str]:
        """Every field the stored secret will contain, template first."""
        names = list(self.template)
        if self.generate_key not in names:
            names.append(self.generate_key)
        return names

    @property
    def excluded_classes(self) -> List[str]:
        classes = []
        if self.exclude_punctuation:
            classes.append("punctuation")
        if not self.include_space:
            classes.append("space")
        return classes

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "template": dict(self.template),
            "generate_key": self.generate_key,
            "exclude_punctuation": self.exclude_punctuation,
            "include_space": self.include_space,
            "exclude_characters": self.exclude_characters,
            "password_length": self.password_length,
        }
