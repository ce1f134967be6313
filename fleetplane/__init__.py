"""Fleet control plane.

Provisions, starts, stops and destroys compute nodes across pluggable
compute providers, coordinates leader-elected singleton services through
group membership on a coordination service, and bridges provider
credentials into a shared configuration registry.
"""

__version__ = "0.1.0"
