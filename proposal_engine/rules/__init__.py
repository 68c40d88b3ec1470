"""Rules — discount eligibility, approval thresholds and org rule configs."""
