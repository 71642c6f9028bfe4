# ====== Synchronizations ======
from __future__ import annotations
from typing import List, Sequence

from engine import Sync, Var, maybe, sync, when

# Every state-changing route gets three rules: the Request rule forwards the
# request body to the concept action, the Response rule answers with the
# action's success field, and the ErrorResponse rule answers with its error.
# Success and error rules never overlap because a failed action has no
# success field to bind.

def request_pattern(path: str, request: Var, **fields):
    return when("Requesting.request", {"path": path, **fields}, {"request": request})

def route(concept: str, action: str, required: Sequence[str], optional: Sequence[str] = (), output: str = "success", request_rule: bool = True) -> List[Sync]:
    path = f"/{concept}/{action}"
    title = concept + action[0].upper() + action[1:]
    ref = f"{concept}.{action}"

    @sync(name=f"{title}Request")
    def forward(request):
        fields = {n: Var(n) for n in (*required, *optional)}
        return {
            "when": [request_pattern(
                path, request,
                **{n: fields[n] for n in required},
                **{n: maybe(fields[n]) for n in optional},
            )],
            "then": [(ref, fields)],
        }

    @sync(name=f"{title}Response")
    def respond(request, result):
        return {
            "when": [request_pattern(path, request), (ref, {}, {output: result})],
            "then": [("Requesting.respond", {"request": request, output: result})],
        }

    @sync(name=f"{title}ErrorResponse")
    def respond_error(request, error):
        return {
            "when": [request_pattern(path, request), (ref, {}, {"error": error})],
            "then": [("Requesting.respond", {"request": request, "error": error})],
        }

    if not request_rule:
        return [respond, respond_error]
    return [forward, respond, respond_error]

# --- ListCreation ---

@sync
def ListCreationNewListRequest(request, listName, listOwner):
    return {
        "when": [request_pattern("/ListCreation/newList", request, listName=listName, listOwner=maybe(listOwner))],
        "then": [("ListCreation", "newList", {"listName": listName, "listOwner": listOwner})],
    }

@sync
def ListCreationNewListResponse(request, list):
    return {
        "when": [
            request_pattern("/ListCreation/newList", request),
            ("ListCreation.newList", {}, {"list": list}),
        ],
        "then": [("Requesting", "respond", {"request": request, "list": list})],
    }

@sync
def ListCreationNewListErrorResponse(request, error):
    return {
        "when": [
            request_pattern("/ListCreation/newList", request),
            ("ListCreation.newList", {}, {"error": error}),
        ],
        "then": [("Requesting", "respond", {"request": request, "error": error})],
    }

@sync
def ListCreationDeleteListRequest(request, list, deleter):
    # the body names the list `list`; the action calls it `listId`
    return {
        "when": [request_pattern("/ListCreation/deleteList", request, list=list, deleter=maybe(deleter))],
        "then": [("ListCreation", "deleteList", {"listId": list, "deleter": deleter})],
    }

@sync
def ListCreationDeleteListRequestAlt(request, listId, deleter, list):
    # `listId` is only consulted when the body has no `list`
    return {
        "when": [request_pattern(
            "/ListCreation/deleteList", request, listId=listId, deleter=maybe(deleter), list=maybe(list),
        )],
        "where": lambda eng, frame: "list" not in frame.vars,
        "then": [("ListCreation", "deleteList", {"listId": listId, "deleter": deleter})],
    }

# --- Session: changeSession snapshots the list before opening the session ---

@sync
def SessionChangeSessionRequest(request, list, sessionOwner):
    return {
        "when": [request_pattern("/Session/changeSession", request, list=list, sessionOwner=sessionOwner)],
        "then": [("ListCreation", "_getListSnapshot", {"list": list})],
    }

@sync
def SessionChangeSessionLoadList(request, sessionOwner, ordering, format, listId, listTitle, listItemsData):
    return {
        "when": [
            request_pattern(
                "/Session/changeSession", request,
                sessionOwner=sessionOwner, ordering=maybe(ordering), format=maybe(format),
            ),
            ("ListCreation._getListSnapshot", {}, {"listId": listId, "listTitle": listTitle, "listItemsData": listItemsData}),
        ],
        "then": [("Session", "changeSession", {
            "listId": listId,
            "listTitle": listTitle,
            "listItemsData": listItemsData,
            "sessionOwner": sessionOwner,
            "ordering": ordering,
            "format": format,
        })],
    }

@sync
def SessionChangeSessionResponse(request, session):
    return {
        "when": [
            request_pattern("/Session/changeSession", request),
            ("Session.changeSession", {}, {"session": session}),
        ],
        "then": [("Requesting", "respond", {"request": request, "session": session})],
    }

@sync
def SessionChangeSessionErrorResponse(request, error):
    return {
        "when": [
            request_pattern("/Session/changeSession", request),
            ("Session.changeSession", {}, {"error": error}),
        ],
        "then": [("Requesting", "respond", {"request": request, "error": error})],
    }

@sync
def SessionChangeSessionListErrorResponse(request, error):
    return {
        "when": [
            request_pattern("/Session/changeSession", request),
            ("ListCreation._getListSnapshot", {}, {"error": error}),
        ],
        "then": [("Requesting", "respond", {"request": request, "error": error})],
    }

def make_syncs() -> List[Sync]:
    syncs: List[Sync] = [
        ListCreationNewListRequest,
        ListCreationNewListResponse,
        ListCreationNewListErrorResponse,
        ListCreationDeleteListRequest,
        ListCreationDeleteListRequestAlt,
        *route("ListCreation", "deleteList", [], request_rule=False),
        SessionChangeSessionRequest,
        SessionChangeSessionLoadList,
        SessionChangeSessionResponse,
        SessionChangeSessionErrorResponse,
        SessionChangeSessionListErrorResponse,
    ]
    syncs += route("ListCreation", "addTask", ["list", "task"], ["adder"], output="listItem")
    syncs += route("ListCreation", "deleteTask", ["list", "task"], ["deleter"])
    syncs += route("ListCreation", "assignOrder", ["list", "task", "newOrder"], ["assigner"])
    syncs += route("TaskBank", "addTask", ["adder", "name"], ["description"], output="task")
    syncs += route("TaskBank", "deleteTask", ["deleter", "task"])
    syncs += route("TaskBank", "addDependency", ["adder", "task1", "task2", "dependency"], output="dependency")
    syncs += route("TaskBank", "deleteDependency", ["deleter", "task", "dependency"])
    syncs += route("Session", "setOrdering", ["session", "newType", "setter"], output="session")
    syncs += route("Session", "setFormat", ["session", "newFormat", "setter"], output="session")
    syncs += route("Session", "randomizeOrder", ["session", "randomizer"], ["dependencies"], output="session")
    syncs += route("Session", "activateSession", ["session", "activator"], output="session")
    syncs += route("Session", "startTask", ["session", "task"], ["starter"], output="session")
    syncs += route("Session", "completeTask", ["session", "task"], output="session")
    syncs += route("Session", "endSession", ["session"], output="session")
    return syncs
