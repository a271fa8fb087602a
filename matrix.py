# matrix.py
import itertools
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

from errors import InvalidRequest


@dataclass
class JobTemplate:
    cmd: str
    cls: str
    params: Dict[str, Union[str, List[str]]] = field(default_factory=dict)
    cp_results: Optional[str] = None


def _values(name, value):
    if isinstance(value, (list, tuple)):
        if not value:
            raise InvalidRequest(f"Parameter {name!r} has no candidate values")
        return [str(v) for v in value]
    return [str(value)]


def expand(params):
    """Cartesian product of the parameters, one dict per combination.

    Parameters keep their declaration order; the first one varies slowest,
    so ``{a: [1, 2], b: [x, y]}`` gives (1,x), (1,y), (2,x), (2,y). Fixed
    values behave like single-element lists.
    """
    names = list(params)
    candidates = [_values(name, params[name]) for name in names]
    return [dict(zip(names, combo)) for combo in itertools.product(*candidates)]


def expand_template(template: JobTemplate):
    return expand(template.params)


def parse_params(pairs):
    """``["a=1,2", "b=x"]`` -> ``{"a": ["1", "2"], "b": ["x"]}``"""
    params = {}
    for pair in pairs:
        if "=" not in pair:
            raise InvalidRequest(f"Expected KEY=VALUE1,VALUE2,... but got {pair!r}")
        key, values = pair.split("=", 1)
        params[key] = values.split(",")
    return params


def render(cmd, variables, machine=None):
    for key, value in variables.items():
        cmd = cmd.replace("{%s}" % key, str(value))
    if machine is not None:
        cmd = cmd.replace("{MACHINE}", machine)
    return cmd


def full_command(driver, cmd, variables, machine=None):
    rendered = render(cmd, variables, machine)
    return f"{driver} {rendered}" if driver else rendered
