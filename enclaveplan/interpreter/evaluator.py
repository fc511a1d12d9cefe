"""
Restricted evaluator for enclave scripts.

Scripts are written in a small, Starlark-like subset of Python syntax,
parsed with `ast` and evaluated by walking the tree. The language has:
  - Statements: assignment (incl. tuple unpacking and subscripts),
    augmented assignment, def / return, if / elif / else, for, break,
    continue, pass, expression statements
  - Expressions: literals, lists, tuples, dicts, arithmetic, comparisons,
    boolean ops, conditional expressions, subscripts and slices, calls
    (incl. *args / **kwargs), list and dict comprehensions
  - Attribute access on script values and a whitelist of str/list/dict methods

Everything else (import, class, while, lambda, with, try, f-strings,
private attributes, recursion) is rejected with a line-tagged
InterpretationError. Without `while` or recursion every script terminates.
"""

import ast
import copy
import dataclasses
import inspect
import functools
import operator
import string
import threading
from enum import Enum
from typing import Any, Callable, Optional

from enclaveplan.errors import InterpretationError, ScriptPosition

BIN_OPS: dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
}

CMP_OPS: dict[type, Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
}

STR_METHODS = frozenset({
    "capitalize", "count", "endswith", "find", "index", "isalnum",
    "isalpha", "isdigit", "islower", "isspace", "isupper", "join", "lower",
    "lstrip", "partition", "replace", "rfind", "rindex", "rpartition", "rsplit",
    "rstrip", "split", "splitlines", "startswith", "strip", "title", "upper",
})
LIST_METHODS = frozenset({"append", "clear", "extend", "index", "insert", "pop", "remove"})
DICT_METHODS = frozenset({"clear", "get", "items", "keys", "pop", "popitem", "setdefault", "update", "values"})

# Node types that may appear anywhere in a script
ALLOWED_NODES = (
    ast.Module, ast.Expr, ast.Assign, ast.AugAssign, ast.If, ast.For,
    ast.FunctionDef, ast.Return, ast.Pass, ast.Break, ast.Continue,
    ast.arguments, ast.arg, ast.keyword,
    ast.Constant, ast.Name, ast.Load, ast.Store, ast.List, ast.Tuple, ast.Dict,
    ast.BinOp, ast.UnaryOp, ast.BoolOp, ast.Compare, ast.IfExp,
    ast.Subscript, ast.Slice, ast.Attribute, ast.Call, ast.Starred,
    ast.ListComp, ast.DictComp, ast.comprehension,
    ast.And, ast.Or, ast.Not, ast.USub, ast.UAdd,
    *BIN_OPS, *CMP_OPS,
)

DISALLOWED_MESSAGES = {
    ast.Import: "import statements are not allowed; use load() or import_module()",
    ast.ImportFrom: "import statements are not allowed; use load() or import_module()",
    ast.ClassDef: "class definitions are not allowed; use struct()",
    ast.While: "while loops are not allowed; use for with range()",
    ast.Lambda: "lambda expressions are not allowed; use def",
    ast.With: "with statements are not allowed",
    ast.Try: "try statements are not allowed; use fail() to stop interpretation",
    ast.Raise: "raise statements are not allowed; use fail() to stop interpretation",
    ast.JoinedStr: "f-strings are not allowed; use % formatting or format()",
    ast.Global: "global statements are not allowed",
    ast.Nonlocal: "nonlocal statements are not allowed",
    ast.Is: "'is' comparisons are not allowed; use ==",
    ast.IsNot: "'is not' comparisons are not allowed; use !=",
}

SAFE_CONSTANT_TYPES = (str, int, float, bool, type(None))


class ScriptRuntimeError(Exception):
    """A script-level failure; the evaluator attaches the script position."""
    pass


class _Return(Exception):
    def __init__(self, value: Any):
        self.value = value


class _Break(Exception):
    pass


class _Continue(Exception):
    pass


# =============================================================================
# SCRIPT VALUES
# =============================================================================


class Scope:
    """A variable scope; lookups fall through to the parent scope."""

    __slots__ = ("_vars", "_parent")

    def __init__(self, parent: Optional["Scope"] = None, variables: Optional[dict[str, Any]] = None):
        self._vars: dict[str, Any] = dict(variables or {})
        self._parent = parent

    def lookup(self, name: str) -> Any:
        scope: Optional[Scope] = self
        while scope is not None:
            if name in scope._vars:
                return scope._vars[name]
            scope = scope._parent
        raise ScriptRuntimeError(f"Undefined name '{name}'")

    def set(self, name: str, value: Any) -> None:
        self._vars[name] = value

    def has_own(self, name: str) -> bool:
        return name in self._vars

    def get_own(self, name: str) -> Any:
        return self._vars.get(name)

    def exported(self) -> dict[str, Any]:
        """Own names not starting with an underscore."""
        return {k: v for k, v in self._vars.items() if not k.startswith("_")}


class ScriptValue:
    """Base class of host objects that expose attributes to scripts."""

    type_name = "value"

    def get_attr(self, name: str) -> Any:
        raise ScriptRuntimeError(f"'{self.type_name}' value has no attribute '{name}'")


class StructValue(ScriptValue):
    """An immutable record with named fields."""

    def __init__(self, type_name: str, fields: dict[str, Any]):
        self.type_name = type_name
        self._fields = dict(fields)

    def get_attr(self, name: str) -> Any:
        if name not in self._fields:
            return super().get_attr(name)
        return self._fields[name]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, StructValue):
            return NotImplemented
        return self.type_name == other.type_name and self._fields == other._fields

    def __repr__(self) -> str:
        fields = ", ".join(f"{k}={script_repr(v)}" for k, v in self._fields.items())
        return f"{self.type_name}({fields})"


class ModuleValue(ScriptValue):
    """An evaluated module, as returned by import_module()."""

    type_name = "module"

    def __init__(self, locator: str, members: dict[str, Any]):
        self.locator = locator
        self._members = members

    def get_attr(self, name: str) -> Any:
        if name not in self._members:
            raise ScriptRuntimeError(f"Module '{self.locator}' has no member '{name}'")
        return self._members[name]

    def __repr__(self) -> str:
        return f'<module "{self.locator}">'


class Builtin:
    """A host function callable from scripts."""

    def __init__(self, name: str, func: Callable[..., Any]):
        self.name = name
        self._func = func
        try:
            self._signature: Optional[inspect.Signature] = inspect.signature(func)
        except (TypeError, ValueError):
            self._signature = None

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        if self._signature is not None:
            try:
                self._signature.bind(*args, **kwargs)
            except TypeError as e:
                raise ScriptRuntimeError(f"{self.name}(): {e}")
        return self._func(*args, **kwargs)

    def __repr__(self) -> str:
        return f"<built-in function {self.name}>"


class ScriptFunction:
    """A function defined by a script with def."""

    def __init__(
        self,
        node: ast.FunctionDef,
        closure: Scope,
        evaluator: "ScriptEvaluator",
        defaults: dict[str, Any],
    ):
        self.node = node
        self.closure = closure
        self.evaluator = evaluator
        self.defaults = defaults

    @property
    def name(self) -> str:
        return self.node.name

    @property
    def lineno(self) -> int:
        return self.node.lineno

    @property
    def param_names(self) -> list[str]:
        """Positional parameters followed by keyword-only parameters."""
        args = self.node.args
        return [a.arg for a in args.args] + [a.arg for a in args.kwonlyargs]

    @property
    def has_kwargs(self) -> bool:
        return self.node.args.kwarg is not None

    def __repr__(self) -> str:
        return f"<function {self.name}>"


# =============================================================================
# RENDERING
# =============================================================================


def script_type_name(value: Any) -> str:
    if isinstance(value, ScriptValue):
        return value.type_name
    if isinstance(value, ScriptFunction):
        return "function"
    if isinstance(value, Builtin):
        return "builtin_function"
    if value is None:
        return "NoneType"
    return type(value).__name__


def script_repr(value: Any) -> str:
    """Render a value the way a script literal would spell it."""
    if isinstance(value, str):
        return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'
    if isinstance(value, Enum):
        return script_repr(value.value)
    if isinstance(value, list):
        return "[" + ", ".join(script_repr(v) for v in value) + "]"
    if isinstance(value, tuple):
        inner = ", ".join(script_repr(v) for v in value)
        return "(" + inner + ("," if len(value) == 1 else "") + ")"
    if isinstance(value, dict):
        return "{" + ", ".join(f"{script_repr(k)}: {script_repr(v)}" for k, v in value.items()) + "}"
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        fields = ", ".join(
            f"{f.name}={script_repr(getattr(value, f.name))}" for f in dataclasses.fields(value)
        )
        return f"{type(value).__name__}({fields})"
    return repr(value)


def script_str(value: Any) -> str:
    """str() of a script value: strings unquoted, everything else as a literal."""
    if isinstance(value, str):
        return value
    return script_repr(value)


class _ScriptFormatter(string.Formatter):
    """str.format limited to plain positional indexes and names; no attribute or item lookups."""

    def get_field(self, field_name: str, args: Any, kwargs: Any) -> Any:
        if not (field_name.isdigit() or (field_name.isidentifier() and not field_name.startswith("_"))):
            raise ScriptRuntimeError(
                f"format(): replacement field '{field_name}' must be a position or a name"
            )
        return super().get_field(field_name, args, kwargs)

    def format_field(self, value: Any, format_spec: str) -> Any:
        if not format_spec:
            return script_str(value)
        return super().format_field(value, format_spec)


_FORMATTER = _ScriptFormatter()


# =============================================================================
# SYNTAX CHECK
# =============================================================================


class _SyntaxChecker(ast.NodeVisitor):
    """Reject every construct outside the script language, with its line."""

    def __init__(self, locator: str):
        self._locator = locator
        self._function_depth = 0
        self._loop_depth = 0
        self._line = 0

    def visit(self, node: ast.AST) -> Any:
        # Operator and context nodes have no lineno; they take their parent's
        outer = self._line
        self._line = getattr(node, "lineno", outer)
        try:
            return super().visit(node)
        finally:
            self._line = outer

    def _reject(self, node: ast.AST, message: str) -> None:
        raise InterpretationError(
            message, position=ScriptPosition(self._locator, getattr(node, "lineno", self._line))
        )

    def generic_visit(self, node: ast.AST) -> Any:
        if type(node) in DISALLOWED_MESSAGES:
            self._reject(node, DISALLOWED_MESSAGES[type(node)])
        if not isinstance(node, ALLOWED_NODES):
            self._reject(node, f"{type(node).__name__} is not supported in scripts")
        return super().generic_visit(node)

    def visit_Constant(self, node: ast.Constant) -> Any:
        if not isinstance(node.value, SAFE_CONSTANT_TYPES):
            self._reject(node, f"Constants of type {type(node.value).__name__} are not supported")

    def visit_Attribute(self, node: ast.Attribute) -> Any:
        if node.attr.startswith("_"):
            self._reject(node, "Private attributes are not allowed")
        if isinstance(node.ctx, ast.Store):
            self._reject(node, "Assigning to attributes is not allowed; values are immutable")
        return self.generic_visit(node)

    def visit_FunctionDef(self, node: ast.FunctionDef) -> Any:
        if node.decorator_list:
            self._reject(node, "Decorators are not allowed")
        if node.args.posonlyargs:
            self._reject(node, "Positional-only parameters are not allowed")
        self._function_depth += 1
        outer_loops, self._loop_depth = self._loop_depth, 0
        self.generic_visit(node)
        self._loop_depth = outer_loops
        self._function_depth -= 1

    def visit_Return(self, node: ast.Return) -> Any:
        if self._function_depth == 0:
            self._reject(node, "'return' outside of a function")
        return self.generic_visit(node)

    def visit_For(self, node: ast.For) -> Any:
        if node.orelse:
            self._reject(node, "for ... else is not allowed")
        self._loop_depth += 1
        self.generic_visit(node)
        self._loop_depth -= 1

    def visit_Break(self, node: ast.Break) -> Any:
        if self._loop_depth == 0:
            self._reject(node, "'break' outside of a loop")

    def visit_Continue(self, node: ast.Continue) -> Any:
        if self._loop_depth == 0:
            self._reject(node, "'continue' outside of a loop")

    def visit_Dict(self, node: ast.Dict) -> Any:
        if any(key is None for key in node.keys):
            self._reject(node, "Dict unpacking with ** is not allowed in literals")
        return self.generic_visit(node)

    def visit_Starred(self, node: ast.Starred) -> Any:
        self._reject(node, "Unpacking with * is only allowed in call arguments")

    def visit_Call(self, node: ast.Call) -> Any:
        self.visit(node.func)
        for arg in node.args:
            self.visit(arg.value if isinstance(arg, ast.Starred) else arg)
        for keyword in node.keywords:
            self.visit(keyword.value)

    def visit_comprehension(self, node: ast.comprehension) -> Any:
        if node.is_async:
            self._reject(node.target, "Async comprehensions are not allowed")
        return self.generic_visit(node)


def parse_script(source: str, locator: str) -> ast.Module:
    """
    Parse and syntax-check a script.

    Raises:
        InterpretationError: On a syntax error or a disallowed construct
    """
    try:
        tree = ast.parse(source, filename=locator)
    except SyntaxError as e:
        raise InterpretationError(
            f"Syntax error: {e.msg}",
            position=ScriptPosition(locator, e.lineno or 0),
            cause=e,
        )
    _SyntaxChecker(locator).visit(tree)
    return tree


# =============================================================================
# EVALUATION
# =============================================================================


class EvaluationState:
    """
    State shared by every evaluator of one interpretation.

    Attributes:
        position: Script position of the call being made (read by builtins)
        cancel_event: Cancellation signal, checked between top-level statements
        call_stack: Script functions currently executing
    """

    def __init__(self, cancel_event: Optional[threading.Event] = None):
        self.position: Optional[ScriptPosition] = None
        self.cancel_event = cancel_event
        self.call_stack: list[ScriptFunction] = []

    def check_cancelled(self, position: ScriptPosition) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise InterpretationError("Interpretation cancelled", position=position, cancelled=True)


class ScriptEvaluator:
    """
    Evaluates one module's source in its global scope.

    Usage:
        evaluator = ScriptEvaluator("main.star", Scope(parent=builtins), state)
        evaluator.run_module(source)
    """

    def __init__(self, locator: str, globals_scope: Scope, state: EvaluationState):
        self.locator = locator
        self.globals = globals_scope
        self.state = state

    def run_module(self, source: str) -> None:
        """Evaluate top-level statements in order, checking for cancellation between them."""
        tree = parse_script(source, self.locator)
        for stmt in tree.body:
            self.state.check_cancelled(self._position(stmt))
            self._exec(stmt, self.globals)

    def call(self, func: Any, args: list[Any], kwargs: dict[str, Any]) -> Any:
        """Call a script function or builtin."""
        if isinstance(func, ScriptFunction):
            return func.evaluator._invoke(func, args, kwargs)
        if isinstance(func, Builtin):
            return func(*args, **kwargs)
        raise ScriptRuntimeError(f"'{script_type_name(func)}' value is not callable")

    def _position(self, node: ast.AST) -> ScriptPosition:
        return ScriptPosition(self.locator, getattr(node, "lineno", 0))

    # -------------------------------------------------------------------------
    # Statements
    # -------------------------------------------------------------------------

    def _exec_block(self, statements: list[ast.stmt], scope: Scope) -> None:
        for stmt in statements:
            self._exec(stmt, scope)

    def _exec(self, stmt: ast.stmt, scope: Scope) -> None:
        try:
            self._exec_statement(stmt, scope)
        except (InterpretationError, _Return, _Break, _Continue):
            raise
        except KeyError as e:
            raise InterpretationError(
                f"Key {script_repr(e.args[0]) if e.args else ''} not found",
                position=self._position(stmt), cause=e,
            )
        except (ScriptRuntimeError, TypeError, ValueError, IndexError, ZeroDivisionError, OverflowError) as e:
            raise InterpretationError(str(e), position=self._position(stmt), cause=e)

    def _exec_statement(self, stmt: ast.stmt, scope: Scope) -> None:
        if isinstance(stmt, ast.Expr):
            self._eval(stmt.value, scope)
        elif isinstance(stmt, ast.Assign):
            value = self._eval(stmt.value, scope)
            for target in stmt.targets:
                self._assign(target, value, scope)
        elif isinstance(stmt, ast.AugAssign):
            self._exec_aug_assign(stmt, scope)
        elif isinstance(stmt, ast.If):
            branch = stmt.body if self._eval(stmt.test, scope) else stmt.orelse
            self._exec_block(branch, scope)
        elif isinstance(stmt, ast.For):
            self._exec_for(stmt, scope)
        elif isinstance(stmt, ast.FunctionDef):
            self._exec_def(stmt, scope)
        elif isinstance(stmt, ast.Return):
            raise _Return(self._eval(stmt.value, scope) if stmt.value is not None else None)
        elif isinstance(stmt, ast.Break):
            raise _Break()
        elif isinstance(stmt, ast.Continue):
            raise _Continue()
        elif isinstance(stmt, ast.Pass):
            pass
        else:
            raise ScriptRuntimeError(f"{type(stmt).__name__} is not supported in scripts")

    def _exec_aug_assign(self, stmt: ast.AugAssign, scope: Scope) -> None:
        op = BIN_OPS[type(stmt.op)]
        value = self._eval(stmt.value, scope)
        target = stmt.target
        if isinstance(target, ast.Name):
            scope.set(target.id, op(scope.lookup(target.id), value))
        elif isinstance(target, ast.Subscript):
            container = self._eval(target.value, scope)
            key = self._eval(target.slice, scope)
            self._check_mutable(container)
            container[key] = op(container[key], value)
        else:
            raise ScriptRuntimeError("Augmented assignment target must be a name or subscript")

    def _exec_for(self, stmt: ast.For, scope: Scope) -> None:
        for item in self._iterate(self._eval(stmt.iter, scope)):
            self._assign(stmt.target, item, scope)
            try:
                self._exec_block(stmt.body, scope)
            except _Break:
                break
            except _Continue:
                continue

    def _exec_def(self, stmt: ast.FunctionDef, scope: Scope) -> None:
        args = stmt.args
        defaults: dict[str, Any] = {}
        positional = args.args[len(args.args) - len(args.defaults):]
        for arg, default in zip(positional, args.defaults):
            defaults[arg.arg] = self._eval(default, scope)
        for arg, default in zip(args.kwonlyargs, args.kw_defaults):
            if default is not None:
                defaults[arg.arg] = self._eval(default, scope)
        scope.set(stmt.name, ScriptFunction(stmt, scope, self, defaults))

    def _assign(self, target: ast.expr, value: Any, scope: Scope) -> None:
        if isinstance(target, ast.Name):
            scope.set(target.id, value)
        elif isinstance(target, (ast.Tuple, ast.List)):
            items = self._iterate(value)
            if len(items) != len(target.elts):
                raise ScriptRuntimeError(
                    f"Cannot unpack {len(items)} value(s) into {len(target.elts)} target(s)"
                )
            for element, item in zip(target.elts, items):
                self._assign(element, item, scope)
        elif isinstance(target, ast.Subscript):
            container = self._eval(target.value, scope)
            self._check_mutable(container)
            container[self._eval(target.slice, scope)] = value
        else:
            raise ScriptRuntimeError(f"Cannot assign to {type(target).__name__}")

    # -------------------------------------------------------------------------
    # Functions
    # -------------------------------------------------------------------------

    def _invoke(self, func: ScriptFunction, args: list[Any], kwargs: dict[str, Any]) -> Any:
        if func in self.state.call_stack:
            raise ScriptRuntimeError(f"Function '{func.name}' called recursively; recursion is not allowed")
        local = Scope(parent=func.closure)
        self._bind_arguments(func, args, kwargs, local)
        self.state.call_stack.append(func)
        try:
            self._exec_block(func.node.body, local)
        except _Return as r:
            return r.value
        finally:
            self.state.call_stack.pop()
        return None

    @staticmethod
    def _bind_arguments(func: ScriptFunction, args: list[Any], kwargs: dict[str, Any], local: Scope) -> None:
        spec = func.node.args
        positional = [a.arg for a in spec.args]
        keyword_only = [a.arg for a in spec.kwonlyargs]
        bound: dict[str, Any] = {}

        if len(args) > len(positional) and spec.vararg is None:
            raise ScriptRuntimeError(
                f"{func.name}() takes {len(positional)} positional argument(s) but {len(args)} were given"
            )
        for name, value in zip(positional, args):
            bound[name] = value
        if spec.vararg is not None:
            local.set(spec.vararg.arg, tuple(args[len(positional):]))

        extra: dict[str, Any] = {}
        for name, value in kwargs.items():
            if name in bound:
                raise ScriptRuntimeError(f"{func.name}() got multiple values for argument '{name}'")
            if name in positional or name in keyword_only:
                bound[name] = value
            elif spec.kwarg is not None:
                extra[name] = value
            else:
                raise ScriptRuntimeError(f"{func.name}() got an unexpected keyword argument '{name}'")
        if spec.kwarg is not None:
            local.set(spec.kwarg.arg, extra)

        for name in positional + keyword_only:
            if name in bound:
                local.set(name, bound[name])
            elif name in func.defaults:
                local.set(name, func.defaults[name])
            else:
                raise ScriptRuntimeError(f"{func.name}() missing required argument '{name}'")

    # -------------------------------------------------------------------------
    # Expressions
    # -------------------------------------------------------------------------

    def _eval(self, node: ast.expr, scope: Scope) -> Any:
        if isinstance(node, ast.Constant):
            return node.value
        if isinstance(node, ast.Name):
            return scope.lookup(node.id)
        if isinstance(node, ast.List):
            return [self._eval(e, scope) for e in node.elts]
        if isinstance(node, ast.Tuple):
            return tuple(self._eval(e, scope) for e in node.elts)
        if isinstance(node, ast.Dict):
            return {self._eval(k, scope): self._eval(v, scope) for k, v in zip(node.keys, node.values)}
        if isinstance(node, ast.BinOp):
            return BIN_OPS[type(node.op)](self._eval(node.left, scope), self._eval(node.right, scope))
        if isinstance(node, ast.UnaryOp):
            operand = self._eval(node.operand, scope)
            if isinstance(node.op, ast.Not):
                return not operand
            if isinstance(node.op, ast.USub):
                return -operand
            return +operand
        if isinstance(node, ast.BoolOp):
            return self._eval_bool_op(node, scope)
        if isinstance(node, ast.Compare):
            return self._eval_compare(node, scope)
        if isinstance(node, ast.IfExp):
            return self._eval(node.body if self._eval(node.test, scope) else node.orelse, scope)
        if isinstance(node, ast.Subscript):
            return self._eval_subscript(node, scope)
        if isinstance(node, ast.Attribute):
            return self._get_attr(self._eval(node.value, scope), node.attr)
        if isinstance(node, ast.Call):
            return self._eval_call(node, scope)
        if isinstance(node, ast.ListComp):
            results: list[Any] = []
            self._comprehend(node.generators, Scope(parent=scope),
                             lambda s: results.append(self._eval(node.elt, s)))
            return results
        if isinstance(node, ast.DictComp):
            mapping: dict[Any, Any] = {}
            self._comprehend(node.generators, Scope(parent=scope),
                             lambda s: mapping.__setitem__(self._eval(node.key, s), self._eval(node.value, s)))
            return mapping
        raise ScriptRuntimeError(f"{type(node).__name__} is not supported in scripts")

    def _eval_bool_op(self, node: ast.BoolOp, scope: Scope) -> Any:
        value: Any = None
        for operand in node.values:
            value = self._eval(operand, scope)
            if isinstance(node.op, ast.And) and not value:
                return value
            if isinstance(node.op, ast.Or) and value:
                return value
        return value

    def _eval_compare(self, node: ast.Compare, scope: Scope) -> bool:
        left = self._eval(node.left, scope)
        for op, comparator in zip(node.ops, node.comparators):
            right = self._eval(comparator, scope)
            if not CMP_OPS[type(op)](left, right):
                return False
            left = right
        return True

    def _eval_subscript(self, node: ast.Subscript, scope: Scope) -> Any:
        container = self._eval(node.value, scope)
        if not isinstance(container, (list, tuple, str, dict)):
            raise ScriptRuntimeError(f"'{script_type_name(container)}' value is not subscriptable")
        if isinstance(node.slice, ast.Slice):
            if isinstance(container, dict):
                raise ScriptRuntimeError("Dicts cannot be sliced")
            bounds = [
                self._eval(part, scope) if part is not None else None
                for part in (node.slice.lower, node.slice.upper, node.slice.step)
            ]
            return container[slice(*bounds)]
        return container[self._eval(node.slice, scope)]

    def _eval_call(self, node: ast.Call, scope: Scope) -> Any:
        func = self._eval(node.func, scope)
        args: list[Any] = []
        for arg in node.args:
            if isinstance(arg, ast.Starred):
                args.extend(self._iterate(self._eval(arg.value, scope)))
            else:
                args.append(self._eval(arg, scope))
        kwargs: dict[str, Any] = {}
        for keyword in node.keywords:
            if keyword.arg is None:
                extra = self._eval(keyword.value, scope)
                if not isinstance(extra, dict):
                    raise ScriptRuntimeError("Argument after ** must be a dict")
                kwargs.update(extra)
            else:
                kwargs[keyword.arg] = self._eval(keyword.value, scope)
        self.state.position = self._position(node)
        return self.call(func, args, kwargs)

    def _comprehend(
        self,
        generators: list[ast.comprehension],
        scope: Scope,
        emit: Callable[[Scope], None],
    ) -> None:
        generator, rest = generators[0], generators[1:]
        for item in self._iterate(self._eval(generator.iter, scope)):
            self._assign(generator.target, item, scope)
            if all(self._eval(condition, scope) for condition in generator.ifs):
                if rest:
                    self._comprehend(rest, scope, emit)
                else:
                    emit(scope)

    @staticmethod
    def _iterate(value: Any) -> list[Any]:
        """Snapshot an iterable so loops never observe their own mutations."""
        if isinstance(value, (list, tuple, str, range)):
            return list(value)
        if isinstance(value, dict):
            return list(value.keys())
        raise ScriptRuntimeError(f"'{script_type_name(value)}' value is not iterable")

    @staticmethod
    def _check_mutable(container: Any) -> None:
        if not isinstance(container, (list, dict)):
            raise ScriptRuntimeError(f"'{script_type_name(container)}' value does not support item assignment")

    @staticmethod
    def _get_attr(obj: Any, name: str) -> Any:
        if isinstance(obj, ScriptValue):
            return obj.get_attr(name)
        if isinstance(obj, str) and name == "format":
            return Builtin("str.format", functools.partial(_FORMATTER.format, obj))
        if isinstance(obj, str) and name in STR_METHODS:
            return Builtin(f"str.{name}", getattr(obj, name))
        if isinstance(obj, list) and name in LIST_METHODS:
            return Builtin(f"list.{name}", getattr(obj, name))
        if isinstance(obj, dict) and name in DICT_METHODS:
            method = getattr(obj, name)
            if name in ("keys", "values", "items"):
                return Builtin(f"dict.{name}", lambda: list(method()))
            return Builtin(f"dict.{name}", method)
        if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
            if name in {f.name for f in dataclasses.fields(obj)}:
                # Records may already sit in emitted instructions; scripts get copies
                return copy.deepcopy(getattr(obj, name))
        raise ScriptRuntimeError(f"'{script_type_name(obj)}' value has no attribute '{name}'")
