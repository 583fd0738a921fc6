"""
Magic package: spell catalogue, spell resolution and auras.
"""

from .spells import Spell, SpellEffect, get_spell, spell_exists
from .resolver import SpellResolution, resolve_spell
from .aura import Aura, AuraEffect, AuraEffectResult

__all__ = [
    "Spell",
    "SpellEffect",
    "get_spell",
    "spell_exists",
    "SpellResolution",
    "resolve_spell",
    "Aura",
    "AuraEffect",
    "AuraEffectResult",
]
