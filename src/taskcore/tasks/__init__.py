"""
Task subsystem.

Components:
- dates.py: due-date parsing/formatting (calendar dates <-> epoch ms)
- repository.py: validated task CRUD with optimistic concurrency
- attachments.py: TaskFiles rows and their blobs
- sweep.py: overdue sweep, periodic loop and background runner
- session.py: per-task CREATE/VIEW/EDIT state machine
"""
