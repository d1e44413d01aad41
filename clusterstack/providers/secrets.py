import secrets
import string
from typing import Dict, List

from clusterstack.errors import InvalidConfigError

_CHARACTER_CLASSES = {
    "lowercase": string.ascii_lowercase,
    "uppercase": string.ascii_uppercase,
    "numbers": string.digits,
    "punctuation": string.punctuation,
    "space": " ",
}

_MAX_ATTEMPTS = 100


class LocalSecretGenerator:
    """Generates secret strings locally with the ``secrets`` module."""

    def generate(
        self,
        template: Dict[str, str],
        excluded_classes: List[str],
        fields: List[str],
        length: int = 32,
        exclude_characters: str = "",
    ) -> Dict[str, str]:
        unknown = [c for c in excluded_classes if c not in _CHARACTER_CLASSES]
        if unknown:
            raise InvalidConfigError(f"Unknown character class(es): {', '.join(unknown)}")
        if length < 1:
            raise InvalidConfigError("Generated secret length must be positive")

        alphabet = "".join(
            chars for name, chars in _CHARACTER_CLASSES.items() if name not in excluded_classes
        )
        alphabet = "".join(c for c in alphabet if c not in exclude_characters)
        if not alphabet:
            raise InvalidConfigError("Secret exclusions leave no characters to generate from")

        values = dict(template)
        for name in fields:
            # a generated value must never collide with a literal template field
            for _ in range(_MAX_ATTEMPTS):
                generated = "".join(secrets.choice(alphabet) for _ in range(length))
                if generated not in template.values():
                    break
            else:
                raise InvalidConfigError(
                    f"Could not generate '{name}' distinct from the template values; "
                    "widen the character set or the length"
                )
            values[name] = generated
        return values
