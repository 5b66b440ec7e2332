"""
Fertilizer catalog and id service.

Built-in (permanent) fertilizers are loaded from permanent_fertilizers.json.
Any fertilizer added on top of them receives an incremental id starting right
after the largest permanent id. Ids are handed out by an explicit generator
owned by the catalog, so the solver itself never touches shared state.
"""
from typing import Dict, Iterable, List, Optional
from pathlib import Path
import itertools
import json
import logging
import threading

from fertimix.services.mixture_query import Fertilizer

logger = logging.getLogger(__name__)

PERMANENT_FERTILIZERS_PATH = Path(__file__).parent.parent / "data" / "permanent_fertilizers.json"


class FertilizerIdGenerator:
    """Monotonically increasing, thread-safe id counter."""

    def __init__(self, start: int = 0):
        self._counter = itertools.count(start)
        self._lock = threading.Lock()

    def new_id(self) -> int:
        with self._lock:
            return next(self._counter)


def load_permanent_fertilizers(path: Optional[Path] = None) -> List[Fertilizer]:
    """Load the built-in fertilizers from JSON."""
    config_path = path or PERMANENT_FERTILIZERS_PATH
    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except Exception as e:
        logger.error(f"[Catalog] Error loading {config_path}: {e}")
        return []

    result = []
    for fert in data.get("fertilizers", []):
        result.append(Fertilizer(
            name=fert.get("name", ""),
            n=float(fert.get("N", 0) or 0),
            p=float(fert.get("P", 0) or 0),
            k=float(fert.get("K", 0) or 0),
            mg=float(fert.get("Mg", 0) or 0),
            with_cl=bool(fert.get("Cl", False)),
            with_s=bool(fert.get("S", False)),
            id=int(fert["id"]),
        ))

    ids = [f.id for f in result]
    if len(set(ids)) != len(ids):
        raise ValueError(f"Duplicate fertilizer ids in {config_path}")
    return result


class FertilizerCatalog:
    """Permanent fertilizers plus the id generator for everything added later."""

    def __init__(self, permanent: Optional[Iterable[Fertilizer]] = None):
        if permanent is None:
            permanent = load_permanent_fertilizers()
        self._permanent: Dict[int, Fertilizer] = {f.id: f for f in permanent}
        self.first_extra_id = max(self._permanent, default=-1) + 1
        self.id_generator = FertilizerIdGenerator(self.first_extra_id)
        logger.debug(f"[Catalog] {len(self._permanent)} permanent fertilizers, extra ids from {self.first_extra_id}")

    @property
    def permanent(self) -> List[Fertilizer]:
        return list(self._permanent.values())

    def get(self, fert_id: int) -> Fertilizer:
        """Permanent fertilizer by id; raises KeyError for unknown ids."""
        return self._permanent[fert_id]

    def new_fertilizer(
        self,
        name: str,
        n: float = 0.0,
        p: float = 0.0,
        k: float = 0.0,
        mg: float = 0.0,
        with_cl: bool = False,
        with_s: bool = False,
        limit: Optional[float] = None,
    ) -> Fertilizer:
        return Fertilizer(
            name=name,
            n=n,
            p=p,
            k=k,
            mg=mg,
            with_cl=with_cl,
            with_s=with_s,
            limit=limit,
            id=self.id_generator.new_id(),
        )

    def re_id(self, fertilizer: Fertilizer) -> Fertilizer:
        """Copy of the fertilizer with a freshly generated id."""
        return fertilizer.with_id(self.id_generator.new_id())

    def find_by_content(self, fertilizer: Fertilizer) -> Optional[Fertilizer]:
        """Permanent fertilizer with the same name and composition, if any."""
        content_id = fertilizer.content_id()
        for permanent in self._permanent.values():
            if permanent.content_id() == content_id:
                return permanent
        return None
