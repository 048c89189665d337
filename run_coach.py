"""
  ============================================
   COACH CORE -- Replay Launcher
  ============================================

  Replays a recorded match (one JSON snapshot per line) through the
  coaching loop and prints the coaching it would have given.

  Usage:
    python run_coach.py match.jsonl              # fast replay on match time
    python run_coach.py match.jsonl --speed 2    # realtime, twice as fast
    python run_coach.py match.jsonl --once       # expire open outcomes at the end

  The loop will:
    1. Validate and record each snapshot
    2. Mine behavioral, tactical, economic and positional patterns
    3. Pick up to three coaching decisions per snapshot
    4. Run each decision's capability plan with retries and fallbacks
    5. Watch what the player does next and feed it back into the rules
"""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), "src"))

from coach_core.main import main


if __name__ == "__main__":
    raise SystemExit(main())
