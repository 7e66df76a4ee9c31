"""pipeaudit: static supply-chain scanner for CI/CD pipelines."""

__version__ = "0.1.0"
