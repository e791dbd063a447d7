"""modelcycle: automated lifecycle orchestration for deployed predictive models.

Detects performance drift, decides whether to retrain, runs and tracks
retraining jobs, validates candidates against the deployed champion and
promotes them, recording every decision in a tamper-evident audit log.
"""

__version__ = "0.1.0"
__author__ = "modelcycle contributors"
