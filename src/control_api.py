"""Local HTTP control surface for the cube tracker (the menu actions)."""

import logging
import threading

from flask import Flask, jsonify, redirect, request

from errors import LinkUnavailable

logger = logging.getLogger(__name__)


def create_app(tracker) -> Flask:
    app = Flask(__name__)

    @app.route('/api/status', methods=['GET'])
    def status():
        return jsonify(tracker.status()), 200

    @app.route('/api/open-timetagger', methods=['GET'])
    def open_timetagger():
        return redirect(tracker.config.web_url)

    @app.route('/api/stop-tracking', methods=['POST'])
    def stop_tracking():
        stopped = tracker.stop_tracking()
        return jsonify({"success": True, "stopped": stopped}), 200

    @app.route('/api/find-devices', methods=['POST'])
    def find_devices():
        try:
            devices = tracker.find_devices()
        except LinkUnavailable as e:
            return jsonify({"error": str(e)}), 503
        return jsonify({
            "devices": [
                {"deviceId": device.device_id, "name": device.name, "rssi": device.rssi}
                for device in devices
            ]
        }), 200

    @app.route('/api/connect-device', methods=['POST'])
    def connect_device():
        data = request.get_json(silent=True) or {}
        device_id = data.get('deviceId')

        if not device_id:
            return jsonify({"error": "deviceId is required"}), 400

        try:
            tracker.connect_device(device_id)
        except LinkUnavailable as e:
            return jsonify({"error": str(e)}), 503
        return jsonify({"success": True}), 202

    @app.route('/api/forget-device', methods=['POST'])
    def forget_device():
        tracker.forget_device()
        return jsonify({"success": True}), 200

    return app


def serve_in_background(tracker, host: str, port: int) -> threading.Thread:
    app = create_app(tracker)
    thread = threading.Thread(
        target=lambda: app.run(host=host, port=port, use_reloader=False),
        name="ControlAPI",
        daemon=True,
    )
    thread.start()
    logger.info("Control API listening on %s:%s", host, port)
    return thread
