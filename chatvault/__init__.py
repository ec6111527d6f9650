"""chatvault - session storage and checkpoint compaction for AI agents."""

__version__ = "0.3.0"
__logo__ = "🗄️"
