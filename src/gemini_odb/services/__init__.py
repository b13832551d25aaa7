"""Business logic services for gemini_odb.

- group_tree - ordered group tree edits (GroupTreeService)
- tree_verify - commit-time structure checks
- calc_queue - derived-calculation state machine (CalculationQueue)
- obscalc, blind_offset - the two calculation queues
- invalidation - routing of upstream edits to the queues (Invalidator)
- editing - mutation paths for calculation inputs
- notify - transactional notifications (NotificationBus)
- worker - obscalc consumer (ObscalcWorker)

Submodules are imported directly; the database layer depends on
``tree_verify`` and importing everything here would be circular.
"""
