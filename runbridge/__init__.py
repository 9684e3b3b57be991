"""runbridge - keeps KubeSphere PipelineRun records in sync with Tekton PipelineRuns."""

__version__ = "0.1.0"
