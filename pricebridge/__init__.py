"""PriceBridge - cross-vendor price reconciliation for canonical products."""

__version__ = "0.1.0"
