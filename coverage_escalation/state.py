from coverage_escalation.database import BroadcastRecordStore
from coverage_escalation.rules import RuleSetRegistry

# In-memory stores
broadcast_db = BroadcastRecordStore()
rule_sets = RuleSetRegistry()
