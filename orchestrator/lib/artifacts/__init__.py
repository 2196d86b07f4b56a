from orchestrator.lib.artifacts.fetcher import ArtifactFetcher, ArtifactFetchResult

__all__ = ["ArtifactFetcher", "ArtifactFetchResult"]
