"""Configuration handling for factor gene set enrichment analysis."""

from dataclasses import dataclass, asdict, replace
from numbers import Integral
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import tomli
import tomli_w

from factor_gsea.exceptions import (
    InvalidConfigurationError,
    InvalidSignModeError,
    UnknownTestNameError,
)

SIGN_MODES = ("positive", "negative", "all")
SET_STATISTICS = ("mean.diff", "rank.sum")
STATISTICAL_TESTS = ("parametric", "cor.adj.parametric", "permutation")
P_ADJUST_METHODS = ("fdr_bh", "fdr_by", "bonferroni", "holm")


def validate_sign(sign: str) -> str:
    if sign not in SIGN_MODES:
        raise InvalidSignModeError(
            f"Unknown sign mode: {sign!r}. Expected one of {', '.join(SIGN_MODES)}"
        )
    return sign


def validate_set_statistic(set_statistic: str) -> str:
    if set_statistic not in SET_STATISTICS:
        raise InvalidConfigurationError(
            f"Unknown set statistic: {set_statistic!r}. "
            f"Expected one of {', '.join(SET_STATISTICS)}"
        )
    return set_statistic


def validate_test_name(statistical_test: str) -> str:
    if statistical_test not in STATISTICAL_TESTS:
        raise UnknownTestNameError(
            f"Unknown statistical test: {statistical_test!r}. "
            f"Expected one of {', '.join(STATISTICAL_TESTS)}"
        )
    return statistical_test


@dataclass(frozen=True)
class EnrichmentSettings:
    """Validated options for a single enrichment run."""

    sign: str = "all"
    set_statistic: str = "mean.diff"
    statistical_test: str = "parametric"
    n_permutations: Optional[int] = None
    alpha: float = 0.1
    p_adjust_method: str = "fdr_bh"
    min_size: int = 1
    max_size: Optional[int] = None
    seed: Optional[int] = None
    n_jobs: int = 1

    def __post_init__(self):
        validate_sign(self.sign)
        validate_set_statistic(self.set_statistic)
        validate_test_name(self.statistical_test)

        if self.statistical_test == "permutation":
            if self.n_permutations is None:
                raise InvalidConfigurationError(
                    "The permutation test requires n_permutations"
                )
            if isinstance(self.n_permutations, bool) or int(self.n_permutations) != self.n_permutations \
                    or self.n_permutations < 1:
                raise InvalidConfigurationError(
                    f"n_permutations must be a positive integer, got {self.n_permutations!r}"
                )

        if not 0.0 < float(self.alpha) < 1.0:
            raise InvalidConfigurationError(f"alpha must lie in (0, 1), got {self.alpha}")

        if self.p_adjust_method not in P_ADJUST_METHODS:
            raise InvalidConfigurationError(
                f"Unknown p-value adjustment method: {self.p_adjust_method!r}. "
                f"Expected one of {', '.join(P_ADJUST_METHODS)}"
            )

        if self.min_size < 1:
            raise InvalidConfigurationError(f"min_size must be at least 1, got {self.min_size}")
        if self.max_size is not None and self.max_size < self.min_size:
            raise InvalidConfigurationError(
                f"max_size ({self.max_size}) is smaller than min_size ({self.min_size})"
            )
        if self.n_jobs < 1:
            raise InvalidConfigurationError(f"n_jobs must be at least 1, got {self.n_jobs}")
        if self.seed is not None and (
            isinstance(self.seed, bool) or not isinstance(self.seed, Integral) or self.seed < 0
        ):
            raise InvalidConfigurationError(
                f"seed must be a non-negative integer, got {self.seed!r}"
            )

    def with_seed(self, seed: int) -> "EnrichmentSettings":
        return replace(self, seed=seed)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class EnrichmentConfig:
    """Configuration class for the enrichment pipeline, read from TOML."""

    def __init__(self, config_path: Union[str, Path]):
        """Initialise the configuration from a TOML file.

        Args:
            config_path: Path to the TOML configuration file
        """
        self.config_path = config_path

        try:
            with open(config_path, "rb") as f:
                config = tomli.load(f)
        except FileNotFoundError:
            raise ValueError(f"Error loading configuration file: {config_path} does not exist")
        except tomli.TOMLDecodeError as e:
            raise ValueError(f"Error loading configuration file: {str(e)}")

        self._set_config(config)

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "EnrichmentConfig":
        """Build a configuration from an already parsed mapping."""
        instance = cls.__new__(cls)
        instance.config_path = None
        instance._set_config(config)
        return instance

    def _set_config(self, config: Dict[str, Any]):
        self.config = config

        required_sections = ['input', 'analysis']
        missing_sections = [section for section in required_sections if section not in self.config]
        if missing_sections:
            raise ValueError(f"Missing required sections in configuration: {', '.join(missing_sections)}")

        self.input_files = self.config.get("input", {})

        required_input_files = ['weights_file', 'feature_sets_file']
        missing_files = [file for file in required_input_files if file not in self.input_files]
        if missing_files:
            raise ValueError(f"Missing required input files in configuration: {', '.join(missing_files)}")

        self.output_config = self.config.get("output", {})
        self.analysis_params = self.config.get("analysis", {})

        # Factors may be "all", a single index/name, or a list of them
        factors = self.analysis_params.get("factors", "all")
        if factors == "all":
            self.factors = None
        elif isinstance(factors, list):
            self.factors = factors
        else:
            self.factors = [factors]

        self.num_threads = self.analysis_params.get("num_threads", 1)

    def get_settings(self) -> EnrichmentSettings:
        """Validated analysis settings from the [analysis] section."""
        params = self.analysis_params
        return EnrichmentSettings(
            sign=params.get("sign", "all"),
            set_statistic=params.get("set_statistic", "mean.diff"),
            statistical_test=params.get("statistical_test", "parametric"),
            n_permutations=params.get("n_permutations"),
            alpha=params.get("alpha", 0.1),
            p_adjust_method=params.get("p_adjust_method", "fdr_bh"),
            min_size=params.get("min_size", 1),
            max_size=params.get("max_size"),
            seed=params.get("seed"),
            n_jobs=self.num_threads,
        )

    def get_factors(self) -> Optional[List[Union[int, str]]]:
        return self.factors

    def get_output_path(self, subdir: Optional[str] = None) -> Path:
        """Get the path to the output directory or a subdirectory within it.

        Args:
            subdir: Optional subdirectory name within the output directory

        Returns:
            Path object for the requested directory
        """
        output_dir = self.output_config.get("output_dir", self.output_config.get("directory", "results"))
        base_path = Path(output_dir)

        if subdir:
            return base_path / subdir

        return base_path

    def save_config(self, output_path: Union[str, Path]) -> None:
        """Save the configuration to a TOML file.

        Args:
            output_path: Path to save the configuration file
        """
        with open(output_path, "wb") as f:
            tomli_w.dump(self.config, f)
