"""
Builders the embedder uses to describe native libraries and classes.

    lib = (LibraryBuilder("greet", "Greetings")
           .function("hello", lambda name: f"hello {name}")
           .constant("DEFAULT", "world")
           .build())
    interp.register_library(lib)

A builder given a `template(factory)` produces a template Library:
`factory(config)` returns the functions bound to one configuration, and
Library.instantiate(config) calls it once per configuration.
"""
from typing import Any, Callable, Dict, Optional, Union

from quill.quill_datatypes import Builtin, Library, QuillClass, BUILTIN_EXCEPTIONS


class LibraryBuilder:
    def __init__(self, name: str, description: str = ""):
        self.name = name
        self.description = description
        self._functions: Dict[str, Builtin] = {}
        self._constants: Dict[str, Any] = {}
        self._subs: Dict[str, Library] = {}
        self._factory: Optional[Callable[[Any], Dict[str, Any]]] = None

    def function(self, name: str, fn: Optional[Callable] = None, help_text: Optional[str] = None):
        """Adds a function. Without `fn` this returns a decorator."""
        if fn is None:
            def decorator(func):
                self._functions[name] = Builtin(func, name, help_text)
                return func
            return decorator
        self._functions[name] = Builtin(fn, name, help_text)
        return self

    def constant(self, name: str, value: Any) -> 'LibraryBuilder':
        self._constants[name] = value
        return self

    def sub_library(self, name: str, library: Union[Library, 'LibraryBuilder']) -> 'LibraryBuilder':
        if isinstance(library, LibraryBuilder):
            library = library.build()
        self._subs[name] = library
        return self

    def template(self, factory: Callable[[Any], Dict[str, Any]]) -> 'LibraryBuilder':
        """Makes the library a template; `factory(config)` supplies its bound functions."""
        self._factory = factory
        return self

    def build(self) -> Library:
        return Library(self.name, dict(self._functions), dict(self._constants), dict(self._subs),
                       self.description, factory=self._factory)


class ClassBuilder:
    """Describes a class whose methods are host callables.

    Each method receives the instance as its first argument, just like a
    script method receives `self`.
    """

    def __init__(self, name: str, base: Union[QuillClass, str, None] = None, doc: Optional[str] = None):
        if isinstance(base, str):
            if base not in BUILTIN_EXCEPTIONS:
                raise ValueError(f"unknown base class '{base}'")
            base = BUILTIN_EXCEPTIONS[base]
        self.name = name
        self.base = base
        self.doc = doc
        self._methods: Dict[str, Builtin] = {}
        self._attributes: Dict[str, Any] = {}

    def method(self, name: str, fn: Optional[Callable] = None, help_text: Optional[str] = None):
        """Adds a method. Without `fn` this returns a decorator."""
        if fn is None:
            def decorator(func):
                self._methods[name] = Builtin(func, name, help_text)
                return func
            return decorator
        self._methods[name] = Builtin(fn, name, help_text)
        return self

    def attribute(self, name: str, value: Any) -> 'ClassBuilder':
        self._attributes[name] = value
        return self

    def build(self) -> QuillClass:
        return QuillClass(self.name, self.base, dict(self._methods), dict(self._attributes), doc=self.doc)
