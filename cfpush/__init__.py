"""
cfpush - push build output to a Cloud Foundry target.

Resolves the target, reconciles service instances, stages the application
bits, resolves manifests and pushes every application in them.
"""

__version__ = "0.1.0"
