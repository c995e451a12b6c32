"""
newo-sync -- mirror NEWO agent configuration onto disk and back.

Projects, agents, flows and skills live remotely. This package pulls
them into a plain directory tree you can edit, diff and commit, then
pushes your edits back. Each customer gets its own credentials, its own
mirror subtree and its own sync state.
"""

__version__ = "0.1.0"
__author__ = "newo-sync contributors"
