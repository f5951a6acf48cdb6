"""HTTP API for the approval and payroll engines."""
