from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from uuid import uuid4
import logging
import random
import threading
import time

from engine import Concept
from store import DocumentStore

logger = logging.getLogger(__name__)

# ====== Concepts ======

class RequestTimeout(Exception):
    def __init__(self, request: str, timeout: float):
        super().__init__(f"No response for request {request} within {timeout:g}s")
        self.request = request
        self.timeout = timeout

@dataclass
class _Pending:
    path: str
    event: threading.Event = field(default_factory=threading.Event)
    payload: Optional[Dict[str, Any]] = None
    t: float = field(default_factory=time.time)
    waited: bool = False

# 1) Requesting: the HTTP boundary. request opens a correlation id, respond closes it.
# wait() and forget() belong to the HTTP layer and are not dispatchable by syncs.
class Requesting(Concept):
    interface = ("request", "respond")

    def __init__(self, name: str = "Requesting", timeout: float = 10.0):
        super().__init__(name)
        self.timeout = timeout
        self._pending: Dict[str, _Pending] = {}
        self._lock = threading.Lock()

    def request(self, path: str, **body: Any) -> Dict[str, Any]:
        rid = str(uuid4())
        with self._lock:
            self._expire(time.time())
            self._pending[rid] = _Pending(path=path)
        return {"request": rid}

    def _expire(self, now: float) -> None:
        # unwaited entries past the timeout can no longer be collected
        stale = [rid for rid, p in self._pending.items() if not p.waited and now - p.t > self.timeout]
        for rid in stale:
            del self._pending[rid]
        if stale:
            logger.debug("Expired %d unanswered requests", len(stale))

    def respond(self, request: str, **fields: Any) -> Dict[str, Any]:
        with self._lock:
            pending = self._pending.get(request)
            if pending is None:
                return {"error": f"Request '{request}' not found."}
            if pending.event.is_set():
                return {"error": f"Request '{request}' already has a response."}
            pending.payload = fields
            pending.event.set()
        return {"request": request}

    def wait(self, request: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        """Block until ``request`` is answered, then collect the payload."""
        timeout = self.timeout if timeout is None else timeout
        with self._lock:
            pending = self._pending.get(request)
            if pending is not None:
                pending.waited = True
        if pending is None:
            return {"error": f"Request '{request}' not found."}
        done = pending.event.wait(timeout=timeout)
        self.forget(request)
        if not done:
            logger.warning("Request %s (%s) timed out after %gs", request, pending.path, timeout)
            raise RequestTimeout(request, timeout)
        return {"response": pending.payload}

    def forget(self, request: str) -> bool:
        with self._lock:
            return self._pending.pop(request, None) is not None

    def pending(self) -> int:
        with self._lock:
            return len(self._pending)

# 2) ListCreation: ordered lists of tasks
class ListCreation(Concept):
    interface = (
        "newList", "addTask", "deleteTask", "assignOrder", "deleteList",
        "_getLists", "_getListById", "_getTasksInList", "_getListSnapshot",
    )

    def __init__(self, name: str, db: DocumentStore):
        super().__init__(name)
        self.lists = db.collection(name + ".lists")

    def newList(self, listName: str, listOwner: Optional[str] = None) -> Dict[str, Any]:
        if self.lists.find_one({"title": listName}):
            return {"error": f"List with name '{listName}' already exists."}
        lid = self.lists.insert_one({"title": listName, "owner": listOwner, "listItems": [], "itemCount": 0})
        return {"list": lid}

    def addTask(self, list: str, task: str, adder: Optional[str] = None) -> Dict[str, Any]:
        doc = self.lists.find_one({"_id": list})
        if not doc:
            return {"error": f"List with ID '{list}' not found."}
        if any(item["task"] == task for item in doc["listItems"]):
            return {"error": f"Task '{task}' is already in list '{list}'."}
        item = {"task": task, "orderNumber": doc["itemCount"] + 1, "taskStatus": "incomplete"}
        def push(d):
            d["listItems"].append(dict(item))
            d["itemCount"] += 1
        self.lists.modify_one({"_id": list}, push)
        return {"listItem": item}

    def deleteTask(self, list: str, task: str, deleter: Optional[str] = None) -> Dict[str, Any]:
        doc = self.lists.find_one({"_id": list})
        if not doc:
            return {"error": f"List with ID '{list}' not found."}
        removed = next((i for i in doc["listItems"] if i["task"] == task), None)
        if removed is None:
            return {"error": f"Task '{task}' not found in list '{list}'."}
        items = []
        for item in doc["listItems"]:
            if item is removed:
                continue
            if item["orderNumber"] > removed["orderNumber"]:
                item = dict(item, orderNumber=item["orderNumber"] - 1)
            items.append(item)
        self.lists.update_one({"_id": list}, {"listItems": items, "itemCount": doc["itemCount"] - 1})
        return {"success": True}

    def assignOrder(self, list: str, task: str, newOrder: int, assigner: Optional[str] = None) -> Dict[str, Any]:
        doc = self.lists.find_one({"_id": list})
        if not doc:
            return {"error": f"List with ID '{list}' not found."}
        moving = next((i for i in doc["listItems"] if i["task"] == task), None)
        if moving is None:
            return {"error": f"Task '{task}' not found in list '{list}'."}
        newOrder = int(newOrder)
        if newOrder < 1 or newOrder > doc["itemCount"]:
            return {"error": f"New order '{newOrder}' is out of bounds (1 to {doc['itemCount']})."}
        old = moving["orderNumber"]
        items = []
        for item in doc["listItems"]:
            n = item["orderNumber"]
            if item is moving:
                n = newOrder
            elif newOrder < old and newOrder <= n < old:
                n += 1
            elif newOrder > old and old < n <= newOrder:
                n -= 1
            items.append(dict(item, orderNumber=n))
        items.sort(key=lambda i: i["orderNumber"])
        self.lists.update_one({"_id": list}, {"listItems": items})
        return {"success": True}

    def deleteList(self, listId: str, deleter: Optional[str] = None) -> Dict[str, Any]:
        doc = self.lists.find_one({"_id": listId})
        if not doc:
            return {"error": f"List with ID '{listId}' not found."}
        if doc.get("owner") and deleter != doc["owner"]:
            return {"error": f"User '{deleter}' does not own list '{listId}'."}
        self.lists.delete_one({"_id": listId})
        return {"success": True}

    def _getLists(self) -> Dict[str, Any]:
        return {"lists": self.lists.find()}

    def _getListById(self, listId: str) -> Dict[str, Any]:
        doc = self.lists.find_one({"_id": listId})
        return {"list": doc} if doc else {"error": f"List with ID '{listId}' not found."}

    def _getTasksInList(self, listId: str) -> Dict[str, Any]:
        doc = self.lists.find_one({"_id": listId})
        if not doc:
            return {"error": f"List with ID '{listId}' not found."}
        return {"listItems": sorted(doc["listItems"], key=lambda i: i["orderNumber"])}

    def _getListSnapshot(self, list: str) -> Dict[str, Any]:
        # shape expected by Session.changeSession
        doc = self.lists.find_one({"_id": list})
        if not doc:
            return {"error": f"List with ID '{list}' not found."}
        items = sorted(doc["listItems"], key=lambda i: i["orderNumber"])
        return {
            "listId": doc["_id"],
            "listTitle": doc["title"],
            "listItemsData": [{"task": i["task"], "defaultOrder": i["orderNumber"]} for i in items],
        }

# 3) TaskBank: a user's tasks and the ordering dependencies between them
class TaskBank(Concept):
    interface = ("addTask", "deleteTask", "addDependency", "deleteDependency", "_listTasks", "_getDependencies")
    RELATIONS = ("precedes", "follows")

    def __init__(self, name: str, db: DocumentStore):
        super().__init__(name)
        self.tasks = db.collection(name + ".tasks")
        self.dependencies = db.collection(name + ".dependencies")

    def addTask(self, adder: str, name: str, description: str = "") -> Dict[str, Any]:
        if not name:
            return {"error": "Task name must not be empty."}
        if self.tasks.find_one({"owner": adder, "name": name}):
            return {"error": f"Task '{name}' already exists for '{adder}'."}
        tid = self.tasks.insert_one({"owner": adder, "name": name, "description": description})
        return {"task": tid}

    def deleteTask(self, deleter: str, task: str) -> Dict[str, Any]:
        doc = self.tasks.find_one({"_id": task})
        if not doc or doc["owner"] != deleter:
            return {"error": f"Task '{task}' not found for '{deleter}'."}
        self.tasks.delete_one({"_id": task})
        self.dependencies.delete_many({"before": task})
        self.dependencies.delete_many({"after": task})
        return {"success": True}

    def addDependency(self, adder: str, task1: str, task2: str, dependency: str) -> Dict[str, Any]:
        if dependency not in self.RELATIONS:
            return {"error": f"Unknown dependency '{dependency}', expected one of {', '.join(self.RELATIONS)}."}
        if task1 == task2:
            return {"error": "A task cannot depend on itself."}
        for t in (task1, task2):
            doc = self.tasks.find_one({"_id": t})
            if not doc or doc["owner"] != adder:
                return {"error": f"Task '{t}' not found for '{adder}'."}
        before, after = (task1, task2) if dependency == "precedes" else (task2, task1)
        if self.dependencies.find_one({"before": before, "after": after}):
            return {"error": "Dependency already exists."}
        if self._reaches(after, before):
            return {"error": "Dependency would create a cycle."}
        did = self.dependencies.insert_one({"owner": adder, "before": before, "after": after})
        return {"dependency": did}

    def _reaches(self, start: str, goal: str) -> bool:
        seen, stack = set(), [start]
        while stack:
            node = stack.pop()
            if node == goal:
                return True
            if node in seen:
                continue
            seen.add(node)
            stack.extend(d["after"] for d in self.dependencies.find({"before": node}))
        return False

    def deleteDependency(self, deleter: str, task: str, dependency: str) -> Dict[str, Any]:
        doc = self.dependencies.find_one({"_id": dependency})
        if not doc or doc["owner"] != deleter or task not in (doc["before"], doc["after"]):
            return {"error": f"Dependency '{dependency}' not found on task '{task}'."}
        self.dependencies.delete_one({"_id": dependency})
        return {"success": True}

    def _listTasks(self, owner: str) -> Dict[str, Any]:
        return {"tasks": self.tasks.find({"owner": owner})}

    def _getDependencies(self, task: str) -> Dict[str, Any]:
        deps = self.dependencies.find({"before": task}) + self.dependencies.find({"after": task})
        return {"dependencies": deps}

def topo_shuffle(nodes: List[Dict[str, Any]], rng: Optional[random.Random] = None) -> List[str]:
    """Random order of ``nodes`` (``{"id", "deps"}``) in which every dep comes first.

    Unknown deps are treated as already satisfied. Nodes caught in a cycle are
    appended in their original order.
    """
    rng = rng or random.Random()
    ids = [n["id"] for n in nodes]
    indegree = {i: 0 for i in ids}
    dependents: Dict[str, List[str]] = {i: [] for i in ids}
    for n in nodes:
        for dep in n.get("deps", ()):
            if dep not in indegree:
                continue
            indegree[n["id"]] += 1
            dependents[dep].append(n["id"])

    ready = [i for i in ids if indegree[i] == 0]
    out: List[str] = []
    while ready:
        node = ready.pop(rng.randrange(len(ready)))
        out.append(node)
        for child in dependents[node]:
            indegree[child] -= 1
            if indegree[child] == 0:
                ready.append(child)

    if len(out) != len(ids):
        remaining = [i for i in ids if i not in out]
        logger.warning("Dependency cycle among %s; keeping their original order", remaining)
        out += remaining
    return out

# 4) Session: a focused run through one list's tasks
class Session(Concept):
    ORDERINGS = ("Default", "Random")
    FORMATS = ("List", "Kanban")

    interface = (
        "changeSession", "setOrdering", "setFormat", "randomizeOrder",
        "activateSession", "startTask", "completeTask", "endSession",
        "_getSession", "_getTasksInOrder",
    )

    def __init__(self, name: str, db: DocumentStore, rng: Optional[random.Random] = None):
        super().__init__(name)
        self.sessions = db.collection(name + ".sessions")
        self.rng = rng or random.Random()

    def changeSession(self, listId: str, listTitle: str, listItemsData: List[Dict[str, Any]], sessionOwner: str,
                      ordering: str = "Default", format: str = "List") -> Dict[str, Any]:
        existing = self.sessions.find_one({"owner": sessionOwner})
        if existing and existing["active"]:
            return {"error": f"User '{sessionOwner}' already has an active session. Please end it first."}
        if ordering not in self.ORDERINGS:
            return {"error": f"Unknown ordering '{ordering}'."}
        if format not in self.FORMATS:
            return {"error": f"Unknown format '{format}'."}
        doc = {
            "owner": sessionOwner,
            "active": False,
            "ordering": ordering,
            "format": format,
            "list": {
                "id": listId,
                "title": listTitle,
                "items": [
                    {
                        "task": i["task"],
                        "defaultOrder": i["defaultOrder"],
                        "randomOrder": i["defaultOrder"],
                        "itemStatus": "Incomplete",
                    }
                    for i in listItemsData
                ],
            },
        }
        if existing:
            self.sessions.update_one({"_id": existing["_id"]}, doc)
            return {"session": existing["_id"]}
        return {"session": self.sessions.insert_one(doc)}

    def _owned_inactive(self, session: str, user: str, what: str) -> Any:
        doc = self.sessions.find_one({"_id": session})
        if not doc or doc["owner"] != user:
            return {"error": f"No session '{session}' found for user '{user}'."}
        if doc["active"]:
            return {"error": f"Cannot change {what} while session for '{user}' is active."}
        return doc

    def setOrdering(self, session: str, newType: str, setter: str) -> Dict[str, Any]:
        if newType not in self.ORDERINGS:
            return {"error": f"Unknown ordering '{newType}'."}
        doc = self._owned_inactive(session, setter, "ordering")
        if "error" in doc:
            return doc
        self.sessions.update_one({"_id": session}, {"ordering": newType})
        return {"session": session, "ordering": newType}

    def setFormat(self, session: str, newFormat: str, setter: str) -> Dict[str, Any]:
        if newFormat not in self.FORMATS:
            return {"error": f"Unknown format '{newFormat}'."}
        doc = self._owned_inactive(session, setter, "format")
        if "error" in doc:
            return doc
        self.sessions.update_one({"_id": session}, {"format": newFormat})
        return {"session": session, "format": newFormat}

    def randomizeOrder(self, session: str, randomizer: str,
                       dependencies: Optional[List[Dict[str, str]]] = None) -> Dict[str, Any]:
        """Shuffle ``randomOrder`` across the session's items.

        ``dependencies`` holds ``{"before": task, "after": task}`` edges; a
        ``before`` task is always ordered ahead of its ``after`` task.
        """
        doc = self.sessions.find_one({"_id": session})
        if not doc or doc["owner"] != randomizer:
            return {"error": f"No session '{session}' found for user '{randomizer}'."}
        if doc["ordering"] != "Random":
            return {"error": f"Cannot randomize order; session for '{randomizer}' is not set to random ordering."}
        deps: Dict[str, List[str]] = {}
        for edge in dependencies or ():
            deps.setdefault(edge["after"], []).append(edge["before"])
        nodes = [{"id": i["task"], "deps": deps.get(i["task"], [])} for i in doc["list"]["items"]]
        order = {task: n for n, task in enumerate(topo_shuffle(nodes, self.rng), start=1)}
        def apply(d):
            for i in d["list"]["items"]:
                i["randomOrder"] = order[i["task"]]
        self.sessions.modify_one({"_id": session}, apply)
        return {"session": session}

    def activateSession(self, session: str, activator: str) -> Dict[str, Any]:
        doc = self.sessions.find_one({"_id": session})
        if not doc or doc["owner"] != activator:
            return {"error": f"No session '{session}' found for user '{activator}'."}
        if doc["active"]:
            return {"error": f"Session for '{activator}' is already active."}
        self.sessions.update_one({"_id": session}, {"active": True})
        return {"session": session, "active": True}

    def _set_status(self, session: str, task: str, expected: str, status: str) -> Dict[str, Any]:
        doc = self.sessions.find_one({"_id": session})
        if not doc:
            return {"error": f"Session '{session}' not found."}
        if not doc["active"]:
            return {"error": f"Session '{session}' is not active."}
        item = next((i for i in doc["list"]["items"] if i["task"] == task), None)
        if item is None:
            return {"error": f"Task '{task}' is not in session '{session}'."}
        if item["itemStatus"] != expected:
            return {"error": f"Task '{task}' is {item['itemStatus']}, expected {expected}."}
        if status == "InProgress" and any(i["itemStatus"] == "InProgress" for i in doc["list"]["items"]):
            return {"error": "Another task is already in progress."}
        def apply(d):
            for i in d["list"]["items"]:
                if i["task"] == task:
                    i["itemStatus"] = status
        self.sessions.modify_one({"_id": session}, apply)
        return {"session": session, "task": task, "itemStatus": status}

    def startTask(self, session: str, task: str, starter: Optional[str] = None) -> Dict[str, Any]:
        return self._set_status(session, task, "Incomplete", "InProgress")

    def completeTask(self, session: str, task: str) -> Dict[str, Any]:
        return self._set_status(session, task, "InProgress", "Complete")

    def endSession(self, session: str) -> Dict[str, Any]:
        doc = self.sessions.find_one({"_id": session})
        if not doc:
            return {"error": f"Session '{session}' not found."}
        if not doc["active"]:
            return {"error": f"Session '{session}' is not active."}
        self.sessions.update_one({"_id": session}, {"active": False})
        return {"session": session, "active": False}

    def _getSession(self, sessionOwner: str) -> Dict[str, Any]:
        doc = self.sessions.find_one({"owner": sessionOwner})
        return {"session": doc} if doc else {"error": f"No session found for user '{sessionOwner}'."}

    def _getTasksInOrder(self, sessionOwner: str) -> Dict[str, Any]:
        doc = self.sessions.find_one({"owner": sessionOwner})
        if not doc:
            return {"error": f"No session found for user '{sessionOwner}'."}
        key = "randomOrder" if doc["ordering"] == "Random" else "defaultOrder"
        items = sorted(doc["list"]["items"], key=lambda i: i[key])
        return {"tasks": [{"task": i["task"], "order": i[key], "status": i["itemStatus"]} for i in items]}
