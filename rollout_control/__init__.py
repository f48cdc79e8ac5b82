"""Progressive rollout control.

Decides per identity whether a feature is active, reconciling a locally cached
default with a centrally managed, versioned rollout policy.
"""

__version__ = "0.1.0"
