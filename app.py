"""
Plate Event Replay: Flask Application
=====================================
JSON API over the replay, time-travel, lineage and protocol layers.
Every endpoint is stateless: the caller posts the event log (or template)
and gets the derived result back.
"""
from __future__ import annotations
import logging
import sys
import os
sys.path.insert(0, os.path.dirname(__file__))

from flask import Flask, request, jsonify

from plate_events.adapters import (
    LegacyShapeDiagnostics, labware_ids_in_commands, normalize_plate_events,
    to_liquid_handler_commands, to_readable_steps,
)
from plate_events.config import load_config
from plate_events.events import InvalidInput, stable_sort_events
from plate_events.layout import LABWARE_TYPES, grid_summary, volume_grid
from plate_events.lineage import build_lineage_graph
from plate_events.protocol import (
    ProtocolBinding, build_protocol_segment_activity, build_protocol_template,
    instantiate_protocol,
)
from plate_events.replay import replay_plate_events, state_to_dict
from plate_events.timeline import (
    event_timeline_for_labware, plate_state_at_time, well_composition_at_time,
)

_config = load_config()
logging.basicConfig(level=_config.log_level,
                    format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = Flask(__name__)


@app.errorhandler(InvalidInput)
def handle_invalid_input(err: InvalidInput):
    return jsonify({"error": str(err)}), 400


def _body() -> dict:
    d = request.get_json(silent=True)
    if not isinstance(d, dict):
        raise InvalidInput("Request body must be a JSON object")
    return d


def _events(d: dict) -> list:
    """Events from the body, with legacy entries wrapped as 'other' events."""
    diagnostics = LegacyShapeDiagnostics(logger)
    return normalize_plate_events(d.get("events"), d.get("record_metadata"), diagnostics)


def _options(d: dict):
    return _config.replay_options(
        focus_labware_id=d.get("focus_labware_id"),
        depletion_by_labware_id=d.get("depletion_by_labware_id"),
    )


# ── Replay API ────────────────────────────────────────────────────────────────

@app.route("/api/replay", methods=["POST"])
def replay():
    d = _body()
    result = replay_plate_events(_events(d), _options(d))
    return jsonify(result.to_dict())


@app.route("/api/state", methods=["POST"])
def state_at_time():
    """Body JSON: events, timestamp (optional; omitted = all events), focus_labware_id."""
    d = _body()
    state = plate_state_at_time(_events(d), d.get("timestamp"), _options(d))
    return jsonify({"timestamp": d.get("timestamp"), "state": state_to_dict(state)})


@app.route("/api/well", methods=["POST"])
def well_at_time():
    d = _body()
    labware_id, well_id = d.get("labware_id"), d.get("well_id")
    if not labware_id or not well_id:
        return jsonify({"error": "labware_id and well_id are required"}), 400
    well = well_composition_at_time(_events(d), d.get("timestamp"), labware_id, well_id, _options(d))
    if well is None:
        return jsonify({"error": f"No state for {labware_id}:{well_id}"}), 404
    return jsonify({"labware_id": labware_id, "well_id": well_id, "well": well.to_dict()})


@app.route("/api/timeline", methods=["POST"])
def timeline():
    d = _body()
    labware_id = d.get("labware_id")
    if not labware_id:
        return jsonify({"error": "labware_id is required"}), 400
    events = event_timeline_for_labware(_events(d), labware_id)
    return jsonify({"labware_id": labware_id, "n_events": len(events), "events": events})


@app.route("/api/lineage", methods=["POST"])
def lineage():
    d = _body()
    result = replay_plate_events(_events(d), _options(d))
    return jsonify(build_lineage_graph(result.edges).to_dict())


@app.route("/api/grid", methods=["POST"])
def grid():
    """
    Well-volume heatmap for one labware at a point in time.
    Body JSON: events, labware_id, timestamp?, labware_type? (e.g. "384well_plate")
    """
    d = _body()
    labware_id = d.get("labware_id")
    if not labware_id:
        return jsonify({"error": "labware_id is required"}), 400
    state = plate_state_at_time(_events(d), d.get("timestamp"), _options(d))
    matrix = volume_grid(state.get(labware_id, {}), d.get("labware_type") or d.get("kind"))
    return jsonify({
        "labware_id": labware_id,
        "volume_ul": {"data": matrix.tolist(), "rows": int(matrix.shape[0]), "cols": int(matrix.shape[1])},
        "summary": grid_summary(matrix),
    })


@app.route("/api/labware/kinds", methods=["GET"])
def labware_kinds():
    return jsonify(LABWARE_TYPES)


# ── Protocol API ──────────────────────────────────────────────────────────────

@app.route("/api/protocol/instantiate", methods=["POST"])
def protocol_instantiate():
    """Body JSON: template {metadata, data: {events, labwareRoles}}, binding {labware, parameters, run_id, base_timestamp}."""
    d = _body()
    events = instantiate_protocol(d.get("template"), ProtocolBinding.from_dict(d.get("binding")))
    return jsonify({"n_events": len(events), "events": events})


@app.route("/api/protocol/activity", methods=["POST"])
def protocol_activity():
    d = _body()
    activity = build_protocol_segment_activity(d.get("template"), ProtocolBinding.from_dict(d.get("binding")))
    return jsonify(activity)


@app.route("/api/protocol/promote", methods=["POST"])
def protocol_promote():
    """Body JSON: events (a recorded run), labware {role: labware_id}, volume_param?, family?, version?, title?"""
    d = _body()
    events = _events(d)
    if not events:
        return jsonify({"error": "No events found in run"}), 400
    template = build_protocol_template(
        events,
        d.get("labware") or {},
        volume_param=d.get("volume_param"),
        family=d.get("family", ""),
        version=d.get("version", "0.1.0"),
        title=d.get("title", "Promoted protocol"),
    )
    return jsonify(template)


# ── Export API ────────────────────────────────────────────────────────────────

@app.route("/api/export/commands", methods=["POST"])
def export_commands():
    d = _body()
    commands = to_liquid_handler_commands(stable_sort_events(_events(d)))
    return jsonify({"commands": commands, "labware": labware_ids_in_commands(commands)})


@app.route("/api/export/steps", methods=["POST"])
def export_steps():
    d = _body()
    return jsonify({"steps": to_readable_steps(stable_sort_events(_events(d)))})


if __name__ == "__main__":
    app.run(host=_config.api_host, port=_config.api_port, debug=_config.api_debug)
