from .interpreter import ExecutionContext, StepInterpreter
from .params import merge_variables, substitute
from .script import LoopSpec, Script, Step, StepKind, parse_script

__all__ = [
    "ExecutionContext",
    "LoopSpec",
    "Script",
    "Step",
    "StepInterpreter",
    "StepKind",
    "merge_variables",
    "parse_script",
    "substitute",
]
