# Plate Event Replay: layered architecture
# Layer 0: units.py     Volume / concentration parsing to SI
# Layer 1: wells.py     Per-well volume + material components
# Layer 2: replay.py    Event replay engine, depletion policy, lineage edges
# Layer 3: timeline.py  State-at-time queries and per-labware timelines
# Layer 4: lineage.py   Deduplicated lineage graph
# Layer 5: protocol.py  Protocol template instantiation and run promotion
#
# Shared:   events.py   Event types, labware refs, timestamp ordering
# Support:  layout.py   Labware geometry and numpy volume grids
#           adapters.py Liquid-handler / readable-step exports, legacy events
#           config.py   YAML engine configuration
