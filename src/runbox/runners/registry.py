from __future__ import annotations
from types import MappingProxyType
from typing import Iterable, List

from ..core.errors import UnsupportedLanguageError
from ..core.utils import normalize_lang
from .base import ToolchainRecipe
from .recipes import ALL_RECIPES


class ToolchainRegistry:
    """Read-only language tag -> recipe table, built once."""

    def __init__(self, recipes: Iterable[ToolchainRecipe]):
        table = {}
        for recipe in recipes:
            for tag in (recipe.language, *recipe.aliases):
                key = normalize_lang(tag)
                if key in table:
                    raise ValueError(f"duplicate language tag {key!r}")
                table[key] = recipe
        self._table = MappingProxyType(table)

    def lookup(self, tag: str) -> ToolchainRecipe:
        try:
            return self._table[normalize_lang(tag)]
        except KeyError:
            raise UnsupportedLanguageError(tag) from None

    def __contains__(self, tag: object) -> bool:
        return isinstance(tag, str) and normalize_lang(tag) in self._table

    def languages(self) -> List[str]:
        return sorted({r.language for r in self._table.values()})

    def tags(self) -> List[str]:
        return sorted(self._table)


REGISTRY = ToolchainRegistry(ALL_RECIPES)


def lookup(tag: str) -> ToolchainRecipe:
    return REGISTRY.lookup(tag)
