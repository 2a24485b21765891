"""
Resumable large-file uploader for the Crust storage network.

Splits a file into bounded parts, adds each part to IPFS, places and funds a
storage order per part, then waits for the order to be replicated or funded.
Every stage is checkpointed on disk so reruns resume where they stopped.
"""

__version__ = "0.3.0"
