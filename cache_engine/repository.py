"""
Cached repository: explicit cache composition for a CRUD-style domain store.
"""

from typing import Any, Awaitable, Callable, Dict, Generic, Iterable, Optional, TypeVar, Union

from .shared.callbacks import invoke
from .shared.logging import get_logger
from .store.models import make_key
from .strategies.engine import StrategyEngine

T = TypeVar("T")
Id = Union[int, str]


class CachedRepository(Generic[T]):
    """Wraps an authoritative store's load/save/delete in cache strategies.

    ``get`` is read-through, ``update`` is write-through, ``delete`` removes
    from the store and then evicts, and ``create`` only touches the store
    (the next ``get`` populates the cache). Entities are cached as the dicts
    produced by ``to_dict`` and rebuilt with ``from_dict``.
    """

    def __init__(
        self,
        engine: StrategyEngine,
        type_tag: str,
        *,
        load: Callable[[Id], Union[Optional[T], Awaitable[Optional[T]]]],
        save: Callable[[T], Any],
        remove: Callable[[Id], Any],
        identify: Callable[[T], Id],
        to_dict: Callable[[T], Dict[str, Any]] = lambda entity: entity,
        from_dict: Callable[[Dict[str, Any]], T] = lambda data: data,
        ttl: Optional[float] = None,
        tags: Iterable[str] = (),
    ):
        self.engine = engine
        self.type_tag = type_tag
        self._load = load
        self._save = save
        self._remove = remove
        self._identify = identify
        self._to_dict = to_dict
        self._from_dict = from_dict
        self.ttl = ttl
        self.tags = tuple(tags) or (type_tag,)
        self.logger = get_logger(f"cache_engine.repository.{type_tag}")

    def key_for(self, entity_id: Id) -> str:
        return make_key(self.type_tag, entity_id)

    async def get(self, entity_id: Id) -> Optional[T]:
        async def loader(_key: str):
            entity = await invoke(self._load, entity_id)
            return None if entity is None else self._to_dict(entity)

        data = await self.engine.get(self.key_for(entity_id), loader, ttl=self.ttl, tags=self.tags)
        return None if data is None else self._from_dict(data)

    async def create(self, entity: T) -> T:
        await invoke(self._save, entity)
        self.logger.debug("Created entity", entity_id=self._identify(entity))
        return entity

    async def update(self, entity: T) -> T:
        entity_id = self._identify(entity)

        async def saver(_key: str, _value: Dict[str, Any]):
            await invoke(self._save, entity)

        await self.engine.put(self.key_for(entity_id), self._to_dict(entity), saver, ttl=self.ttl, tags=self.tags)
        return entity

    async def delete(self, entity_id: Id) -> bool:
        async def deleter(_key: str):
            await invoke(self._remove, entity_id)

        return await self.engine.delete(self.key_for(entity_id), deleter)
