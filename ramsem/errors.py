# -*- coding: utf-8 -*-
# Exceptions raised by the ramsem modules


class SemError(Exception):
    """Base class of all ramsem errors"""


class CyclicModelError(SemError):
    """The regression paths of a parameter table admit no topological order"""


class MissingParameterError(SemError, KeyError):
    """A parameter label has no value to write and no default"""

    def __str__(self):
        return str(self.args[0]) if self.args else ""


class DimensionMismatchError(SemError, ValueError):
    """Parameter labels and values (or table columns) differ in length"""


class SingularStructuralMatrixError(SemError):
    """(I - A) is not invertible at the evaluated parameter vector"""


class ExternalMatchError(SemError):
    """A parameter matched zero or several rows of an external solution table"""
