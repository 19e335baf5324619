"""Sheet task engine: queue claiming, row pipelines, retries and reporting."""
