from flask import Flask, request, jsonify
from doc_consolidator import run_consolidation, sanitize_filename, ConsolidationError, BASE_OUTPUT_DIR
import os
import datetime
import logging

app = Flask(__name__)

@app.route("/consolidate", methods=["POST"])
def consolidate():
    data = request.get_json(silent=True) or {}
    source = data.get("source")
    file_name = data.get("fileName")

    if not source:
        return jsonify({"error": "Missing source"}), 400

    # Sanitize and timestamp the artifact name
    base_name = sanitize_filename(file_name or source)
    timestamp = datetime.datetime.now().strftime("%Y%m%d_%H%M%S")
    output_name = f"{base_name}_{timestamp}.pdf"
    output_path = os.path.join(BASE_OUTPUT_DIR, output_name)

    os.makedirs(BASE_OUTPUT_DIR, exist_ok=True)

    try:
        result = run_consolidation(source, output_path=output_path, extension=data.get("extension"))
    except ConsolidationError as e:
        logging.error(f"Consolidation of {source} failed: {e}")
        return jsonify({"error": str(e)}), 422

    return jsonify({
        "fileName": output_name,
        "fileSize": f"{os.path.getsize(output_path)} bytes",
        "summary": f"Consolidated {result.rendered_count} of {len(result.rendered_sections)} units from {source}.",
        "warnings": result.warnings,
        "failedUnits": result.failed_units,
    })

if __name__ == "__main__":
    app.run(host="0.0.0.0", port=8000)
