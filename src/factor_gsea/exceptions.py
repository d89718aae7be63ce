"""Exceptions and warnings raised by the enrichment engine."""


class EnrichmentError(ValueError):
    """Base class for all enrichment errors."""


class InputAlignmentError(EnrichmentError):
    """Weights, catalog or correlation data cannot be aligned into a usable universe.

    Raised for an empty feature intersection, malformed input tables,
    out-of-range factor indices, or when no feature set survives filtering.
    """


class InvalidConfigurationError(EnrichmentError):
    """An analysis option is unknown or a required side input is missing."""


class InvalidSignModeError(InvalidConfigurationError):
    """Sign mode is not one of 'positive', 'negative' or 'all'."""


class UnknownTestNameError(InvalidConfigurationError):
    """Statistical test is not one of the supported strategies."""


class MissingCorrelationDataError(InvalidConfigurationError):
    """The correlation-adjusted test was requested without a data matrix."""


class DegenerateInputError(EnrichmentError):
    """A foreground/background split does not admit variance estimation."""


class DegenerateSampleSizeError(DegenerateInputError):
    """A foreground or background group has fewer than two features.

    Attributes:
        gene_sets: Names (or indices) of the offending sets
    """

    def __init__(self, message, gene_sets=None):
        super().__init__(message)
        self.gene_sets = list(gene_sets) if gene_sets is not None else []


class NumericInstabilityWarning(RuntimeWarning):
    """A variance estimate used as a denominator is numerically zero."""
