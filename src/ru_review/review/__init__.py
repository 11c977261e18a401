"""Review orchestration engine.

A review run walks a fleet of local repositories and hands each admitted
repository to an external agent driver inside an isolated git worktree.
The engine itself owns only the coordination concerns around that:

- a single-holder review lock with stale-owner reclamation;
- a rate governor that turns upstream headroom, driver backoff and error
  bursts into an effective concurrency limit;
- a lock-guarded JSON state document and a resume checkpoint;
- preflight admission checks, worktree allocation, push safety, and the
  exit-code aggregation that summarizes a run.

Everything runs on one host. Cooperating processes coordinate through the
state directory only.
"""
