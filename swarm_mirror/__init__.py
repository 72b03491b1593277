"""
swarm-mirror — Keep bare git repositories in step with a Perforce Git Fusion mirror.
"""

__version__ = "0.1.0"
