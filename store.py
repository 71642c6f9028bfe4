from __future__ import annotations
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4
import copy
import threading

# ====== Document store ======

Filter = Dict[str, Any]

def fresh_id() -> str:
    return str(uuid4())

def _matches(doc: Dict[str, Any], flt: Filter) -> bool:
    return all(k in doc and doc[k] == v for k, v in flt.items())

class Collection:
    """In-memory collection of documents keyed by ``_id``.

    Documents are deep-copied on the way in and out, so callers never hold a
    reference into stored state.
    """

    def __init__(self, name: str):
        self.name = name
        self._docs: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def insert_one(self, doc: Dict[str, Any]) -> str:
        doc = copy.deepcopy(doc)
        doc.setdefault("_id", fresh_id())
        with self._lock:
            if doc["_id"] in self._docs:
                raise KeyError(f"duplicate _id {doc['_id']!r} in {self.name}")
            self._docs[doc["_id"]] = doc
        return doc["_id"]

    def find_one(self, flt: Optional[Filter] = None) -> Optional[Dict[str, Any]]:
        flt = flt or {}
        with self._lock:
            if set(flt) == {"_id"}:
                doc = self._docs.get(flt["_id"])
                return copy.deepcopy(doc) if doc is not None else None
            for doc in self._docs.values():
                if _matches(doc, flt):
                    return copy.deepcopy(doc)
        return None

    def find(self, flt: Optional[Filter] = None) -> List[Dict[str, Any]]:
        flt = flt or {}
        with self._lock:
            return [copy.deepcopy(d) for d in self._docs.values() if _matches(d, flt)]

    def update_one(self, flt: Filter, changes: Dict[str, Any]) -> bool:
        """Merge ``changes`` into the first matching document."""
        return self.modify_one(flt, lambda doc: doc.update(copy.deepcopy(changes)))

    def modify_one(self, flt: Filter, fn: Callable[[Dict[str, Any]], None]) -> bool:
        with self._lock:
            for doc in self._docs.values():
                if _matches(doc, flt):
                    fn(doc)
                    return True
        return False

    def delete_one(self, flt: Filter) -> bool:
        with self._lock:
            for key, doc in self._docs.items():
                if _matches(doc, flt):
                    del self._docs[key]
                    return True
        return False

    def delete_many(self, flt: Filter) -> int:
        with self._lock:
            doomed = [k for k, d in self._docs.items() if _matches(d, flt)]
            for key in doomed:
                del self._docs[key]
        return len(doomed)

class DocumentStore:
    def __init__(self):
        self._collections: Dict[str, Collection] = {}
        self._lock = threading.Lock()

    def collection(self, name: str) -> Collection:
        with self._lock:
            if name not in self._collections:
                self._collections[name] = Collection(name)
            return self._collections[name]
