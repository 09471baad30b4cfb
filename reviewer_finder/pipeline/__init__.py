# Reviewer discovery pipeline: config, run context, events, per-candidate
# error recording and the analysis/discovery coordinator.
# Entry points live in reviewer_finder.pipeline.coordinator (run_analysis, run_discovery).
