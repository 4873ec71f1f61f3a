"""Formation catalog for 11-a-side and 7-a-side match sheets."""

from __future__ import annotations

from typing import Dict, List, TypedDict

FOOTBALL_TYPES = ("11", "7")
DEFAULT_FORMATION_ID = "4-4-2"


class Formation(TypedDict, total=False):
    id: str
    name: str
    football_type: str
    positions: Dict[str, int]
    description: str | None


def _formation(formation_id: str, football_type: str, defenders: int, midfielders: int, forwards: int,
               description: str, name: str | None = None) -> Formation:
    return Formation(
        id=formation_id,
        name=name or formation_id,
        football_type=football_type,
        positions={"DEF": defenders, "MED": midfielders, "DEL": forwards},
        description=description,
    )


FORMATIONS_11: List[Formation] = [
    _formation("2-2-2-2-2", "11", 2, 2, 2, "Formación juvenil con líneas equilibradas"),
    _formation("3-2-3-2", "11", 3, 2, 3, "Sistema ofensivo con 3 defensores"),
    _formation("3-3-2-2", "11", 3, 3, 2, "Equilibrio con medio campo fuerte"),
    _formation("3-3-3-1", "11", 3, 3, 1, "Un delantero de referencia con apoyo desde atrás"),
    _formation("3-4-1-2", "11", 3, 4, 1, "Medio campo poblado con un delantero"),
    _formation("3-4-2-1", "11", 3, 4, 1, "Sistema con mediapunta y delantero"),
    _formation("3-4-3", "11", 3, 4, 3, "Sistema ofensivo clásico"),
    _formation(
        "3-4-3-diamond", "11", 3, 4, 3, "Variante con medio campo en rombo",
        name="3-4-3 sistema (de diamante)",
    ),
    _formation("3-5-2", "11", 3, 5, 2, "Control del centro del campo"),
    _formation("4-1-3-2", "11", 4, 1, 3, "Pivote defensivo con creativos arriba"),
    _formation("4-1-4-1", "11", 4, 1, 4, "Línea defensiva sólida con banda"),
    _formation("4-2-2-2", "11", 4, 2, 2, "Sistema equilibrado línea por línea"),
    _formation("4-4-2", "11", 4, 4, 2, "Formación clásica y equilibrada"),
    _formation("4-3-3", "11", 4, 3, 3, "Sistema ofensivo moderno"),
]

FORMATIONS_7: List[Formation] = [
    _formation("2-3-1", "7", 2, 3, 1, "Sistema equilibrado - Más control del medio campo"),
    _formation("3-2-1", "7", 3, 2, 1, "Sistema defensivo - Mayor presencia atrás"),
    _formation("1-3-2", "7", 1, 3, 2, "Sistema versátil - Equilibrio defensivo-ofensivo"),
    _formation("2-1-2-1", "7", 2, 1, 2, "Sistema dinámico - Transiciones rápidas"),
    _formation("1-1-3-1", "7", 1, 1, 3, "Sistema arriesgado - Contraataques rápidos"),
    _formation("2-2-2", "7", 2, 2, 2, "Sistema ofensivo - Juego dinámico y divertido"),
]

FORMATIONS: List[Formation] = [*FORMATIONS_11, *FORMATIONS_7]


def get_formations_by_type(football_type: str) -> List[Formation]:
    """Return the formations available for "11" or "7" a-side football."""
    if football_type not in FOOTBALL_TYPES:
        raise ValueError(f"Unknown football type: {football_type!r}")
    return FORMATIONS_11 if football_type == "11" else FORMATIONS_7


def get_formation(formation_id: str) -> Formation:
    for formation in FORMATIONS:
        if formation["id"] == formation_id:
            return formation
    raise KeyError(formation_id)


def default_formation() -> Formation:
    return get_formation(DEFAULT_FORMATION_ID)
