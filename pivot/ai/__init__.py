from .freestyle import FreestyleCollaborator, OllamaFreestyleClient, build_brief, parse_suggestion

__all__ = ["FreestyleCollaborator", "OllamaFreestyleClient", "build_brief", "parse_suggestion"]
