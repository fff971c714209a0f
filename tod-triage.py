#!/usr/bin/env python3
"""
tod-triage CLI

Interactive Todoist triage: walk through tasks one at a time and schedule,
prioritize, label, move or complete each of them.

Usage:
    ./tod-triage.py schedule --project Inbox     # Give undated tasks a due date
    ./tod-triage.py overdue                      # Reschedule overdue tasks
    ./tod-triage.py prioritize --project Work    # Give every task a priority
    ./tod-triage.py process --project Inbox      # Process the inbox in Todoist order
    ./tod-triage.py next --filter "today"        # Show the most pressing task
    ./tod-triage.py resolve next friday at 3pm   # Check how a date is read

Examples:
    # Schedule with free text at the prompt
    > tomorrow at 9am
    > every other monday

    # Move the current task to a section
    > m Work/Backlog
"""

import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent / 'src'))

from triage_manager import main

if __name__ == '__main__':
    sys.exit(main())
