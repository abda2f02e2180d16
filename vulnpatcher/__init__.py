"""Multi-agent vulnerability fix orchestration with code context retrieval"""

__version__ = "0.1.0"
