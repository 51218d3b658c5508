"""
Methods of the built-in value types.

Where Python's own method already has the right semantics it is exposed
directly; methods that compare elements go through the evaluator so
script classes with __eq__ / __lt__ behave.
"""
from typing import Any, Dict, Optional

from quill.quill_datatypes import Builtin, QuillDict, QuillSet, iter_values
from quill.quill_errors import QuillValueError


def _wrap(owner, names) -> Dict[str, Builtin]:
    return {name: Builtin(getattr(owner, name), name) for name in names}


STR_METHODS = _wrap(str, (
    "upper", "lower", "strip", "lstrip", "rstrip", "split", "rsplit", "splitlines",
    "join", "replace", "startswith", "endswith", "find", "rfind", "index", "rindex",
    "count", "format", "title", "capitalize", "swapcase", "casefold", "isdigit",
    "isalpha", "isalnum", "isspace", "isupper", "islower", "isnumeric", "isdecimal",
    "isidentifier", "zfill", "center", "ljust", "rjust", "partition", "rpartition",
    "removeprefix", "removesuffix", "expandtabs",
))


# --- list ---

async def _index_of(seq, value, *, interp) -> int:
    for i, item in enumerate(seq):
        if await interp.evaluator.equals(item, value):
            return i
    raise QuillValueError(f"{value!r} is not in {'list' if isinstance(seq, list) else 'tuple'}")


async def _count_of(seq, value, *, interp) -> int:
    total = 0
    for item in seq:
        if await interp.evaluator.equals(item, value):
            total += 1
    return total


async def _list_remove(lst, value, *, interp):
    for i, item in enumerate(lst):
        if await interp.evaluator.equals(item, value):
            del lst[i]
            return None
    raise QuillValueError("list.remove(x): x not in list")


async def _list_sort(lst, key=None, reverse: bool = False, *, interp):
    lst[:] = await interp.evaluator.sort_values(list(lst), key, reverse)


def _list_extend(lst, iterable, *, ctx):
    lst.extend(ctx.checked(iter_values(iterable)))


def _list_insert(lst, index: int, value):
    lst.insert(index, value)


LIST_METHODS = _wrap(list, ("append", "pop", "reverse", "clear", "copy"))
LIST_METHODS.update({
    "extend": Builtin(_list_extend, "extend"),
    "insert": Builtin(_list_insert, "insert"),
    "remove": Builtin(_list_remove, "remove"),
    "sort": Builtin(_list_sort, "sort"),
    "index": Builtin(_index_of, "index"),
    "count": Builtin(_count_of, "count"),
})

TUPLE_METHODS = {
    "index": Builtin(_index_of, "index"),
    "count": Builtin(_count_of, "count"),
}


# --- dict ---

def _dict_update(d, other=None, **kwargs):
    if other is not None:
        if isinstance(other, QuillDict):
            d.update(other.items())
        else:
            for pair in iter_values(other):
                key, value = iter_values(pair)
                d[key] = value
    for key, value in kwargs.items():
        d[key] = value


def _dict_get(d, key, default=None):
    return d[key] if key in d else default


DICT_METHODS = _wrap(QuillDict, ("keys", "values", "items", "pop", "popitem", "setdefault", "clear", "copy"))
DICT_METHODS.update({
    "get": Builtin(_dict_get, "get"),
    "update": Builtin(_dict_update, "update"),
})


# --- set ---

def _set_union(s, *others):
    result = s.copy()
    for other in others:
        for item in iter_values(other):
            result.add(item)
    return result


def _set_update(s, *others):
    for other in others:
        for item in iter_values(other):
            s.add(item)


def _set_intersection(s, *others):
    result = s.copy()
    for other in others:
        keep = QuillSet(iter_values(other))
        result = QuillSet(item for item in result if item in keep)
    return result


def _set_difference(s, *others):
    result = s.copy()
    for other in others:
        for item in iter_values(other):
            result.discard(item)
    return result


def _set_symmetric_difference(s, other):
    other = QuillSet(iter_values(other))
    return (s - other) | (other - s)


def _set_issubset(s, other) -> bool:
    other = QuillSet(iter_values(other))
    return all(item in other for item in s)


def _set_issuperset(s, other) -> bool:
    return all(item in s for item in iter_values(other))


def _set_isdisjoint(s, other) -> bool:
    return not any(item in s for item in iter_values(other))


def _set_pop(s):
    if not s:
        raise KeyError("pop from an empty set")
    return s.pop()


SET_METHODS = _wrap(QuillSet, ("add", "remove", "discard", "clear", "copy"))
SET_METHODS.update({
    "pop": Builtin(_set_pop, "pop"),
    "union": Builtin(_set_union, "union"),
    "update": Builtin(_set_update, "update"),
    "intersection": Builtin(_set_intersection, "intersection"),
    "difference": Builtin(_set_difference, "difference"),
    "symmetric_difference": Builtin(_set_symmetric_difference, "symmetric_difference"),
    "issubset": Builtin(_set_issubset, "issubset"),
    "issuperset": Builtin(_set_issuperset, "issuperset"),
    "isdisjoint": Builtin(_set_isdisjoint, "isdisjoint"),
})

_TABLES = (
    (str, STR_METHODS),
    (list, LIST_METHODS),
    (tuple, TUPLE_METHODS),
    (QuillDict, DICT_METHODS),
    (QuillSet, SET_METHODS),
)


def lookup(value: Any, name: str) -> Optional[Builtin]:
    for type_, table in _TABLES:
        if isinstance(value, type_):
            return table.get(name)
    return None


def method_names(value: Any) -> list:
    for type_, table in _TABLES:
        if isinstance(value, type_):
            return sorted(table)
    return []
