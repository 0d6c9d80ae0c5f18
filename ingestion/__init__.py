"""
Crawl-ingest pipeline components.

Modules:
    base: Abstract source adapter (fetch one batch at a cursor)
    state: RunState, FetchResult, NaturalKey and the driver's states
    checkpoint: Durable cursor per source and the run audit trail
    runner: Pipeline driver with retry/backoff
    pipelines: The named pipelines wired from settings
    media: Image downloads into the local image directory
    cli: Command line entry point

Subpackages:
    extractors: Paginated API, rendered store pages, tracking pages and
        stored products as sources
    filters: Dedup filter against already persisted entities
    transformers: Raw records to entity graphs, size and category rules
    loaders: Transactional batch writer with natural-key upserts

Architecture:
    fetch -> dedup -> transform -> write -> checkpoint -> pacing, looped
    until the source reports it is exhausted. A retryable failure anywhere
    in the loop discards the batch and restarts from the last persisted
    cursor after a backoff; a fatal one ends the run.

Example:
    from ingestion.pipelines import build_pipeline, PipelineOptions

    pipeline = build_pipeline("catalog-api", PipelineOptions(force=True))
    stats = await pipeline.run()
    print(f"Loaded {stats['records_loaded']} records")
"""

__all__ = [
    "SourceAdapter",
    "PipelineDriver",
    "CheckpointStore",
    "BatchWriter",
    "DedupFilter",
    "build_pipeline",
]
