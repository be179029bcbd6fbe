"""
Small helpers shared by the model and problem classes: verbose tracing and
name → symbol resolution for user-supplied value maps.
"""

import sympy as sp

LOG_PREFIX = "[sciml-tutorials]"


class VerboseMixin:
    """Adds an indented ``log`` method that prints only when ``verbose`` is set."""

    verbose = False

    def log(self, message, depth=0):
        """Print an indented debug message when ``verbose=True``.

        Parameters
        ----------
        message : str
            The message to print.
        depth : int
            Indentation level (each level = 2 spaces).
        """
        if self.verbose:
            indent = "  " * depth
            print(f"{LOG_PREFIX} {indent}{message}")


def warn(message):
    print(f"[Warning] {message}")


def symbol_table(symbols):
    """Name → symbol lookup for a sequence of symbols."""
    return {s.name: s for s in symbols}


def resolve_symbol(key, table):
    """Map a user key (symbol, name, or derivative term) onto a known symbol.

    Raises
    ------
    KeyError
        If ``key`` does not name any symbol in ``table``.
    """
    # Derivative terms name the states introduced by order lowering.
    if hasattr(key, "lowered_name"):
        key = key.lowered_name
    if isinstance(key, sp.Symbol):
        key = key.name
    if not isinstance(key, str):
        raise KeyError(f"Cannot use {key!r} as a variable key")
    if key not in table:
        raise KeyError(f"Unknown variable '{key}'")
    return table[key]


def resolve_value_map(mapping, table):
    """Resolve the keys of ``mapping`` (dict or pair sequence) against ``table``."""
    if mapping is None:
        return {}
    items = mapping.items() if hasattr(mapping, "items") else mapping
    return {resolve_symbol(k, table): v for k, v in items}
