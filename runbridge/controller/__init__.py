"""PipelineRun controller: reconciler, record stores, work queue and manager."""
