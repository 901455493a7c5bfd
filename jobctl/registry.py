"""Operation registry: the table of operations jobs can target.

Operations are grouped into domains. A domain knows how to turn a list of
integer ids into the subjects an operation acts on; an operation declares
the kind of each of its positional parameters so that the JSON-encoded
arguments of a job can be decoded without inspecting the handler.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Type
from pydantic import BaseModel
import pydantic

from .errors import ValidationError


class ParamKind(str, Enum):
    """How an encoded argument is turned into a native value."""
    SUBJECTS = "subjects"  # an id or a list of ids in the job's domain
    DATA = "data"  # a JSON object, optionally validated into a model
    SCALAR = "scalar"  # passed through as decoded from JSON


@dataclass(frozen=True)
class Param:
    name: str
    kind: ParamKind = ParamKind.SCALAR
    model: Optional[Type[BaseModel]] = None


@dataclass(frozen=True)
class ExecutionContext:
    """Identity a job's operation runs under."""
    owner: str
    job_id: Optional[int] = None


@dataclass
class Subjects:
    """Ordered collection of subjects addressed by id within a domain."""
    domain: str
    ids: List[int]
    items: List[Any] = field(default_factory=list)

    def __iter__(self):
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)


@dataclass(frozen=True)
class Operation:
    name: str
    handler: Callable[..., Any]
    params: Sequence[Param] = ()

    @property
    def arity(self) -> int:
        return len(self.params)


class Domain:
    """A named family of subjects and the operations defined on them."""

    def __init__(self, name: str, loader: Optional[Callable[[List[int]], List[Any]]] = None):
        self.name = name
        self.loader = loader
        self.operations: Dict[str, Operation] = {}

    def browse(self, ids: Sequence[int]) -> Subjects:
        """Resolve ``ids`` into subjects, keeping their order."""
        ids = [int(i) for i in ids]
        items = list(self.loader(ids)) if self.loader else list(ids)
        return Subjects(self.name, ids, items)

    def get_operation(self, name: str) -> Operation:
        op = self.operations.get(name)
        if op is None:
            raise ValidationError(f"unknown operation in domain: {self.name}.{name}")
        return op


class OperationRegistry:
    """Maps (domain, operation) references to handlers.

    Handlers are called as ``handler(ctx, subjects, *args)`` where ``ctx`` is
    an :class:`ExecutionContext` and ``subjects`` a :class:`Subjects`.
    """

    def __init__(self):
        self._domains: Dict[str, Domain] = {}

    def register_domain(self, name: str, loader: Optional[Callable[[List[int]], List[Any]]] = None) -> Domain:
        """Add a domain, or return the existing one with that name."""
        domain = self._domains.get(name)
        if domain is None:
            domain = Domain(name, loader)
            self._domains[name] = domain
        elif loader is not None:
            domain.loader = loader
        return domain

    def register_operation(self, domain: str, name: str, handler: Callable[..., Any],
                           params: Sequence[Param] = ()) -> Operation:
        op = Operation(name, handler, tuple(params))
        self.register_domain(domain).operations[name] = op
        return op

    def operation(self, domain: str, name: Optional[str] = None, params: Sequence[Param] = ()):
        """Decorator form of :meth:`register_operation`.

        Example:
            @registry.operation("partner", params=[Param("values", ParamKind.DATA)])
            def write(ctx, partners, values):
                ...
        """
        def decorator(func):
            self.register_operation(domain, name or func.__name__, func, params)
            return func
        return decorator

    def get_domain(self, name: str) -> Domain:
        domain = self._domains.get(name)
        if domain is None:
            raise ValidationError(f"unknown domain: {name}")
        return domain

    def get_operation(self, domain: str, name: str) -> Operation:
        return self.get_domain(domain).get_operation(name)

    def domains(self) -> List[str]:
        return sorted(self._domains)


def decode_argument(param: Param, value: Any, domain: Domain) -> Any:
    """Convert one JSON-decoded argument according to its declared kind."""
    if param.kind is ParamKind.SUBJECTS:
        if value is None:
            ids = []
        elif isinstance(value, list):
            ids = value
        else:
            ids = [value]
        return domain.browse(ids)
    if param.kind is ParamKind.DATA:
        if param.model is None:
            return dict(value or {})
        try:
            return param.model.model_validate(value or {})
        except pydantic.ValidationError as e:
            raise ValueError(f"invalid value for parameter {param.name}: {e}") from e
    return value
