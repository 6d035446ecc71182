"""
Exception types for the trap-inactivity bias study.

Trial-level errors are recorded by the aggregator and never stop a scenario.
Scenario-level errors stop only the scenario that raised them.
"""


class ScrBiasError(Exception):
    """Base class for all study errors."""


class TrialError(ScrBiasError):
    """A single simulate-and-fit trial could not produce estimates."""


class NoCapturesError(TrialError):
    """The simulated survey detected no individuals."""


class FitError(TrialError):
    """The likelihood could not be evaluated or optimized."""


class ScenarioError(ScrBiasError):
    """A scenario configuration is structurally invalid."""


class ConfigError(ScenarioError):
    """Invalid configuration values or configuration file."""
