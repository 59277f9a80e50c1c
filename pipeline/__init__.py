from .core import BatchJob, PipelineResult, PipelineState, TransactionPipeline, run_batch

__all__ = ["BatchJob", "PipelineResult", "PipelineState", "TransactionPipeline", "run_batch"]
