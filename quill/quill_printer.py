"""
Renders Quill values the way str() and repr() show them to scripts.
"""
import collections.abc

from quill.quill_datatypes import (
    QuillDict, QuillSet, QuillFunction, Builtin, BoundMethod, QuillClass,
    Instance, ExceptionInstance, Library, SuperProxy, type_name,
)


class Printer:
    """Formats values in `repr` or `str` mode.

    `overrides` maps (id(obj), mode) to text already produced by a
    script-defined __str__ / __repr__; the evaluator computes those
    (they may run script code) before handing the value over.
    """

    def __init__(self, overrides=None):
        self._overrides = overrides or {}
        self._handlers = self._create_handlers()
        self._active = set()

    def pformat(self, obj, mode="repr"):
        """Public entry point to format an object."""
        key = (id(obj), mode)
        if key in self._overrides:
            return self._overrides[key]
        handler = self._get_handler(obj)
        return handler(obj, mode)

    def _get_handler(self, obj):
        obj_type = type(obj)
        if obj_type in self._handlers:
            return self._handlers[obj_type]
        if isinstance(obj, ExceptionInstance):
            return self._pformat_exception
        if isinstance(obj, Instance):
            return self._pformat_instance
        if isinstance(obj, collections.abc.Mapping):
            return self._pformat_dict
        return lambda o, m: repr(o)

    def _create_handlers(self):
        return {
            str: self._pformat_str,
            int: self._pformat_primitive,
            float: self._pformat_float,
            bool: self._pformat_primitive,
            type(None): self._pformat_none,
            list: self._pformat_list,
            tuple: self._pformat_tuple,
            range: self._pformat_range,
            QuillDict: self._pformat_dict,
            QuillSet: self._pformat_set,
            QuillFunction: self._pformat_function,
            Builtin: self._pformat_builtin,
            BoundMethod: self._pformat_bound_method,
            QuillClass: self._pformat_class,
            Instance: self._pformat_instance,
            ExceptionInstance: self._pformat_exception,
            Library: self._pformat_library,
            SuperProxy: self._pformat_super,
        }

    def _pformat_primitive(self, obj, mode):
        return str(obj)

    def _pformat_float(self, obj, mode):
        return repr(obj)

    def _pformat_none(self, obj, mode):
        return "None"

    def _pformat_str(self, obj, mode):
        return obj if mode == "str" else repr(obj)

    def _nested(self, obj, render):
        # Self-referencing containers print as [...] like Python
        if id(obj) in self._active:
            return None
        self._active.add(id(obj))
        try:
            return render()
        finally:
            self._active.discard(id(obj))

    def _pformat_list(self, obj, mode):
        out = self._nested(obj, lambda: "[" + ", ".join(self.pformat(x) for x in obj) + "]")
        return "[...]" if out is None else out

    def _pformat_tuple(self, obj, mode):
        if len(obj) == 1:
            return f"({self.pformat(obj[0])},)"
        return "(" + ", ".join(self.pformat(x) for x in obj) + ")"

    def _pformat_range(self, obj, mode):
        if obj.step == 1:
            return f"range({obj.start}, {obj.stop})"
        return f"range({obj.start}, {obj.stop}, {obj.step})"

    def _pformat_dict(self, obj, mode):
        def render():
            items = [f"{self.pformat(k)}: {self.pformat(v)}" for k, v in obj.items()]
            return "{" + ", ".join(items) + "}"
        out = self._nested(obj, render)
        return "{...}" if out is None else out

    def _pformat_set(self, obj, mode):
        if not obj:
            return "set()"
        return "{" + ", ".join(self.pformat(x) for x in obj) + "}"

    def _pformat_function(self, obj, mode):
        return f"<function {obj.name}>"

    def _pformat_builtin(self, obj, mode):
        if obj.type_check is not None:
            return f"<class '{obj.name}'>"
        return f"<builtin {obj.name}>"

    def _pformat_bound_method(self, obj, mode):
        receiver = obj.receiver
        owner = receiver.cls.name if isinstance(receiver, Instance) else type_name(receiver)
        return f"<bound method {owner}.{obj.name}>"

    def _pformat_class(self, obj, mode):
        return f"<class '{obj.name}'>"

    def _pformat_instance(self, obj, mode):
        return f"<{obj.cls.name} object>"

    def _pformat_exception(self, obj, mode):
        if mode == "str":
            return obj.message
        args = obj.fields.get("args", ())
        if not isinstance(args, tuple) or len(args) != 1:
            inner = ", ".join(self.pformat(a) for a in args) if isinstance(args, tuple) else ""
        else:
            inner = self.pformat(args[0])
        return f"{obj.cls.name}({inner})"

    def _pformat_library(self, obj, mode):
        return f"<library '{obj.name}'>"

    def _pformat_super(self, obj, mode):
        return "<super>"