from __future__ import annotations

import html
import json

from .models import HumanAuthContext


def render_approval_page(context: HumanAuthContext, open_token: str) -> str:
    """Approval page for one request. Values are escaped; page config is embedded as JSON."""
    config = {
        "requestId": context.request_id,
        "token": open_token,
        "status": context.status,
        "capability": context.capability,
        "expiresAt": context.expires_at.isoformat(),
    }
    # "</" inside a script block would let a crafted value close the tag.
    config_json = json.dumps(config).replace("</", "<\\/")
    rows = [
        ("Capability", context.capability),
        ("Task", context.task or "-"),
        ("Session", f"{context.session_id} (step {context.step})"),
        ("Current app", context.current_app or "unknown"),
        ("Reason", context.reason or "-"),
        ("Expires", context.expires_at.strftime("%Y-%m-%d %H:%M:%S UTC")),
    ]
    summary_html = "\n".join(
        f'<div class="row"><span class="key">{html.escape(key)}</span>'
        f'<span class="val">{html.escape(str(value))}</span></div>'
        for key, value in rows
    )
    return (
        _PAGE.replace("__INSTRUCTION__", html.escape(context.instruction))
        .replace("__REQUEST_ID__", html.escape(context.request_id))
        .replace("__SUMMARY__", summary_html)
        .replace("__CONFIG_JSON__", config_json)
    )


def render_error_page(title: str, message: str) -> str:
    return (
        _ERROR_PAGE.replace("__TITLE__", html.escape(title))
        .replace("__MESSAGE__", html.escape(message))
    )


_STYLE = """
  <style>
    :root {
      --bg: #f3efe6;
      --panel: #fffaf0;
      --ink: #112433;
      --muted: #5c6b74;
      --accent: #0f8b8d;
      --accent-strong: #136f63;
      --line: #d7d1c3;
      --warn: #b00020;
    }
    * { box-sizing: border-box; }
    body {
      margin: 0;
      min-height: 100vh;
      font-family: system-ui, sans-serif;
      color: var(--ink);
      background:
        radial-gradient(circle at 10% 10%, #b6e3df 0%, transparent 45%),
        radial-gradient(circle at 90% 85%, #ffd3a8 0%, transparent 42%),
        var(--bg);
    }
    .wrap { max-width: 560px; margin: 24px auto; padding: 0 16px 24px; display: grid; gap: 16px; }
    .card {
      background: var(--panel);
      border: 1px solid var(--line);
      border-radius: 16px;
      box-shadow: 0 8px 22px rgba(17, 36, 51, 0.08);
      padding: 16px;
    }
    .title { margin: 0 0 6px; font-size: 1.4rem; line-height: 1.2; }
    .pill {
      font-family: ui-monospace, monospace;
      font-size: 0.78rem;
      border: 1px solid var(--line);
      border-radius: 999px;
      padding: 4px 10px;
      background: #fff;
    }
    .row { display: flex; justify-content: space-between; gap: 12px; padding: 4px 0; }
    .key { color: var(--muted); }
    .val { text-align: right; word-break: break-word; }
    label { display: block; margin: 10px 0 4px; font-weight: 600; }
    textarea, input, select {
      width: 100%;
      font: inherit;
      padding: 8px;
      border: 1px solid var(--line);
      border-radius: 10px;
      background: #fff;
    }
    .buttons { display: flex; gap: 10px; margin-top: 14px; }
    button { flex: 1; font: inherit; padding: 12px; border-radius: 12px; border: 0; cursor: pointer; }
    button.primary { background: var(--accent); color: #fff; }
    button.primary:hover { background: var(--accent-strong); }
    button.danger { background: #fff; color: var(--warn); border: 1px solid var(--warn); }
    button.secondary { background: #fff; border: 1px solid var(--line); }
    button:disabled { opacity: 0.5; cursor: default; }
    .hidden { display: none; }
    .status { margin: 10px 0 0; color: var(--muted); }
    .status.error { color: var(--warn); }
  </style>
"""

_PAGE = (
    """<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <meta name="referrer" content="no-referrer">
  <title>Authorization request</title>
"""
    + _STYLE
    + """</head>
<body>
  <main class="wrap">
    <section class="card">
      <h1 class="title">__INSTRUCTION__</h1>
      <span class="pill">__REQUEST_ID__</span>
    </section>
    <section class="card">
__SUMMARY__
    </section>
    <section class="card" id="decisionCard">
      <label for="artifactKind">Attach</label>
      <select id="artifactKind">
        <option value="">Nothing</option>
        <option value="text">Text (code, password, answer)</option>
        <option value="geo">Location</option>
        <option value="image">Photo</option>
      </select>
      <div id="textFields" class="hidden">
        <label for="textValue">Text</label>
        <input id="textValue" autocomplete="one-time-code" maxlength="4000">
      </div>
      <div id="geoFields" class="hidden">
        <label for="latValue">Latitude</label>
        <input id="latValue" type="number" step="any" min="-90" max="90">
        <label for="lonValue">Longitude</label>
        <input id="lonValue" type="number" step="any" min="-180" max="180">
        <div class="buttons"><button class="secondary" id="locateBtn" type="button">Use my location</button></div>
      </div>
      <div id="imageFields" class="hidden">
        <label for="imageFile">Photo</label>
        <input id="imageFile" type="file" accept="image/*" capture="environment">
      </div>
      <label for="noteInput">Note (optional)</label>
      <textarea id="noteInput" rows="2" maxlength="1000"></textarea>
      <div class="buttons">
        <button class="primary" id="approveBtn">Approve</button>
        <button class="danger" id="rejectBtn">Reject</button>
      </div>
      <p class="status" id="statusText">Waiting for your decision.</p>
    </section>
  </main>
  <script>
    const config = __CONFIG_JSON__;
    const statusText = document.getElementById("statusText");
    const kindSelect = document.getElementById("artifactKind");
    const buttons = [document.getElementById("approveBtn"), document.getElementById("rejectBtn")];

    function setStatus(message, isError = false) {
      statusText.textContent = message;
      statusText.classList.toggle("error", isError);
    }

    function lockForm(message) {
      buttons.forEach((button) => { button.disabled = true; });
      kindSelect.disabled = true;
      setStatus(message);
    }

    if (config.status !== "pending") {
      lockForm(`This request is already ${config.status}.`);
    }

    kindSelect.addEventListener("change", () => {
      ["text", "geo", "image"].forEach((kind) => {
        document.getElementById(`${kind}Fields`).classList.toggle("hidden", kindSelect.value !== kind);
      });
    });

    document.getElementById("locateBtn").addEventListener("click", () => {
      if (!navigator.geolocation) {
        setStatus("Location is not available in this browser.", true);
        return;
      }
      navigator.geolocation.getCurrentPosition(
        (pos) => {
          document.getElementById("latValue").value = pos.coords.latitude.toFixed(6);
          document.getElementById("lonValue").value = pos.coords.longitude.toFixed(6);
        },
        (err) => setStatus(`Location failed: ${err.message}`, true),
      );
    });

    function readFileBase64(file) {
      return new Promise((resolve, reject) => {
        const reader = new FileReader();
        reader.onload = () => resolve(String(reader.result).split(",", 2)[1] || "");
        reader.onerror = () => reject(new Error("Could not read the photo."));
        reader.readAsDataURL(file);
      });
    }

    async function buildArtifact() {
      const kind = kindSelect.value;
      if (kind === "text") {
        const value = document.getElementById("textValue").value;
        if (!value) throw new Error("Text is empty.");
        return { kind, value };
      }
      if (kind === "geo") {
        const lat = parseFloat(document.getElementById("latValue").value);
        const lon = parseFloat(document.getElementById("lonValue").value);
        if (Number.isNaN(lat) || Number.isNaN(lon)) throw new Error("Latitude and longitude are required.");
        return { kind, lat, lon };
      }
      if (kind === "image") {
        const file = document.getElementById("imageFile").files[0];
        if (!file) throw new Error("Choose a photo first.");
        return { kind, mime_type: file.type || "image/jpeg", base64: await readFileBase64(file) };
      }
      return null;
    }

    async function submit(decision) {
      try {
        setStatus("Sending...");
        const body = { decision, note: document.getElementById("noteInput").value };
        if (decision === "approve") {
          const artifact = await buildArtifact();
          if (artifact) body.artifact = artifact;
        }
        const url = `/v1/human-auth/requests/${encodeURIComponent(config.requestId)}/resolve`
          + `?token=${encodeURIComponent(config.token)}`;
        const response = await fetch(url, {
          method: "POST",
          headers: { "Content-Type": "application/json" },
          body: JSON.stringify(body),
        });
        const data = await response.json();
        if (!response.ok) {
          throw new Error(typeof data.detail === "string" ? data.detail : JSON.stringify(data.detail));
        }
        lockForm(`Recorded: ${data.status}. You can close this page.`);
      } catch (err) {
        setStatus(String(err.message || err), true);
      }
    }

    buttons[0].addEventListener("click", () => submit("approve"));
    buttons[1].addEventListener("click", () => submit("reject"));
  </script>
</body>
</html>
"""
)

_ERROR_PAGE = (
    """<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <title>__TITLE__</title>
"""
    + _STYLE
    + """</head>
<body>
  <main class="wrap">
    <section class="card">
      <h1 class="title">__TITLE__</h1>
      <p class="status error">__MESSAGE__</p>
    </section>
  </main>
</body>
</html>
"""
)
