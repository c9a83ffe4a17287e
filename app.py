import logging
import os
import time
import uuid

from dotenv import load_dotenv

from flask import Flask, abort, g, jsonify, redirect, render_template, request, session
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException

import db_utils
import discord_auth
from search import search_candidates
from turn_order import (
    DEFAULT_MAX_SESSIONS,
    NEW_CHARACTER_ID,
    CharacterNotFound,
    SessionRegistry,
    TurnOrderError,
    is_new_character,
)

# Database bootstrap:
#   1. Provide DATABASE_URL, or DB_HOST, DB_PORT, DB_NAME, DB_USER, and DB_PASSWORD in your .env file.
#   2. Start the app; missing tables are created on startup.
#   3. Register a Discord application and set DISCORD_CLIENT_ID / DISCORD_CLIENT_SECRET.

# --- Basic Flask setup ---
load_dotenv()

app = Flask(__name__)
app.config["SECRET_KEY"] = os.environ.get("SECRET_KEY", "change-me-in-prod")
app.config["DISCORD_CLIENT_ID"] = os.environ.get("DISCORD_CLIENT_ID", "")
app.config["DISCORD_CLIENT_SECRET"] = os.environ.get("DISCORD_CLIENT_SECRET", "")
app.config["DISCORD_REDIRECT_URI"] = os.environ.get(
    "DISCORD_REDIRECT_URI", "http://localhost:8080/auth/discord/callback"
)

logger = logging.getLogger(__name__)

DEFAULT_PORT = 8080
PLAIN_TEXT = {"Content-Type": "text/plain; charset=utf-8"}

# One turn order per viewer, least recently used evicted first.
turn_orders = SessionRegistry(max_sessions=int(os.environ.get("MAX_VIEWER_SESSIONS", DEFAULT_MAX_SESSIONS)))


def configure_logging():
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def init_db():
    """Create missing tables. A database outage here is logged, not fatal."""

    try:
        db_utils.create_tables()
    except (SQLAlchemyError, RuntimeError):
        logger.exception("Database unavailable at startup; requests will fail until it is reachable")
        return False
    return True


# --- Request logging and errors ---

@app.before_request
def log_request_start():
    g.request_started = time.perf_counter()
    logger.info("Started %s %s", request.method, request.path)


@app.after_request
def log_request_end(response):
    started = g.get("request_started")
    elapsed_ms = (time.perf_counter() - started) * 1000 if started else 0.0
    logger.info("Completed %s %s -> %s in %.1fms", request.method, request.path, response.status_code, elapsed_ms)
    return response


@app.errorhandler(HTTPException)
def handle_http_error(exc):
    headers = dict(exc.get_headers())
    headers.update(PLAIN_TEXT)
    return exc.description or exc.name, exc.code, headers


@app.errorhandler(CharacterNotFound)
def handle_missing_character(exc):
    return str(exc), 404, PLAIN_TEXT


@app.errorhandler(TurnOrderError)
def handle_turn_order_error(exc):
    logger.info("Rejected %s %s: %s", request.method, request.path, exc)
    return str(exc), 400, PLAIN_TEXT


@app.errorhandler(SQLAlchemyError)
def handle_store_error(exc):
    logger.exception("Store failure during %s %s", request.method, request.path)
    return "Store failure", 500, PLAIN_TEXT


@app.errorhandler(discord_auth.DiscordAuthError)
def handle_discord_error(exc):
    logger.error("Discord login failed: %s", exc)
    return str(exc), 500, PLAIN_TEXT


# --- Identity helpers ---

def current_discord_id():
    return session.get("discord_id") or None


def viewer_key():
    discord_id = current_discord_id()
    if discord_id:
        return f"discord:{discord_id}"
    viewer_id = session.get("viewer_id")
    if not viewer_id:
        viewer_id = uuid.uuid4().hex
        session["viewer_id"] = viewer_id
    return f"anon:{viewer_id}"


def get_turn_order():
    turn_order = turn_orders.get(viewer_key(), owner_id=current_discord_id())
    if not turn_order.loaded:
        turn_order.load(db_utils)
    return turn_order


def forget_turn_order():
    turn_orders.discard(viewer_key())


def require_visible_character(character_id):
    record = db_utils.get_character(character_id)
    discord_id = current_discord_id()
    if not record or (discord_id and record["owner_id"] not in (None, discord_id)):
        abort(404, "Character not found")
    return record


# --- Request body helpers ---

def read_json_body():
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        abort(400, "Request body must be a JSON object")
    return payload


def _coerce_int(value, field):
    if isinstance(value, bool):
        abort(400, f"Field {field} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        abort(400, f"Field {field} must be an integer")


def read_int(payload, *keys, default=None):
    for key in keys:
        if key in payload and payload[key] is not None:
            return _coerce_int(payload[key], keys[0])
    if default is None:
        abort(400, f"Missing field: {keys[0]}")
    return default


def parse_character_payload(payload):
    name = payload.get("name")
    if not isinstance(name, str) or not name.strip():
        abort(400, "Character name is required")
    record = {
        "id": read_int(payload, "id", default=NEW_CHARACTER_ID),
        "name": name.strip(),
        "armor_class": read_int(payload, "armorClass", "armor_class", default=0),
        "max_hp": read_int(payload, "maxHP", "max_hp", default=0),
        "current_hp": read_int(payload, "currentHP", "current_hp", default=0),
        "initiative": read_int(payload, "initiative", default=0),
    }
    for key in ("isActive", "is_active"):
        if key in payload:
            record["is_active"] = bool(payload[key])
            break
    return record


# --- Rendering helpers ---

def blank_character_row():
    return {
        "id": NEW_CHARACTER_ID,
        "name": "",
        "armor_class": 0,
        "max_hp": 0,
        "current_hp": 0,
        "initiative": 0,
        "is_active": False,
        "owner_id": current_discord_id(),
        "edit_mode": True,
    }


def render_character_list(turn_order, extra_rows=()):
    rows = [dict(character, edit_mode=False) for character in turn_order.snapshot()]
    rows.extend(extra_rows)
    return render_template(
        "character_list.html",
        characters=rows,
        selected_encounter_id=turn_order.selected_encounter_id,
    )


def visible_encounters():
    discord_id = current_discord_id()
    if not discord_id:
        return []
    return db_utils.list_encounters(owner_id=discord_id)


def render_encounter_list(turn_order):
    return render_template(
        "encounter_list.html",
        encounters=visible_encounters(),
        selected_encounter_id=turn_order.selected_encounter_id,
    )


def require_selected_encounter(turn_order):
    if turn_order.selected_encounter_id is None:
        abort(400, "No encounter selected")
    return turn_order.selected_encounter_id


# --- Routes ---

@app.route("/")
def index():
    discord_id = current_discord_id()
    turn_order = get_turn_order()
    user_characters = db_utils.list_characters(owner_id=discord_id) if discord_id else []
    return render_template(
        "index.html",
        username=session.get("discord_user"),
        user_characters=user_characters,
        encounters=visible_encounters(),
        characters=[dict(c, edit_mode=False) for c in turn_order.snapshot()],
        selected_encounter_id=turn_order.selected_encounter_id,
    )


@app.route("/encounters", methods=["GET", "POST"])
def encounter_list():
    turn_order = get_turn_order()
    if request.method == "POST":
        discord_id = current_discord_id()
        if not discord_id:
            abort(401, "Login required")
        payload = read_json_body()
        name = payload.get("name")
        if not isinstance(name, str) or not name.strip():
            abort(400, "Encounter name is required")
        campaign_id = payload.get("campaign_id")
        db_utils.create_encounter(
            name.strip(),
            discord_id,
            description=str(payload.get("description") or ""),
            encounter_type=str(payload.get("encounter_type") or "combat"),
            campaign_id=_coerce_int(campaign_id, "campaign_id") if campaign_id is not None else None,
        )
    return render_encounter_list(turn_order)


@app.route("/select-encounter", methods=["POST"])
def select_encounter():
    encounter_id = read_int(read_json_body(), "id")
    encounter = db_utils.get_encounter(encounter_id)
    discord_id = current_discord_id()
    if not encounter or (discord_id and encounter["owner_id"] != discord_id):
        abort(404, "Encounter not found")
    turn_order = turn_orders.get(viewer_key(), owner_id=discord_id)
    turn_order.select_encounter(db_utils, encounter_id)
    return render_character_list(turn_order)


@app.route("/characters")
def character_list():
    return render_character_list(get_turn_order())


@app.route("/next", methods=["POST"])
def next_character():
    turn_order = get_turn_order()
    turn_order.advance()
    return render_character_list(turn_order)


@app.route("/select-character", methods=["POST"])
def select_character():
    character_id = read_int(read_json_body(), "id")
    turn_order = get_turn_order()
    turn_order.select_active(character_id)
    return render_character_list(turn_order)


@app.route("/sort", methods=["POST"])
def sort_characters():
    turn_order = get_turn_order()
    turn_order.sort_by_initiative()
    return render_character_list(turn_order)


@app.route("/reorder", methods=["POST"])
def reorder_characters():
    payload = read_json_body()
    old_index = read_int(payload, "oldIndex", "old_index")
    new_index = read_int(payload, "newIndex", "new_index")
    get_turn_order().reorder(old_index, new_index)
    return jsonify(status="success")


@app.route("/add-character", methods=["POST"])
def add_character():
    return render_character_list(get_turn_order(), extra_rows=[blank_character_row()])


@app.route("/save-character", methods=["POST"])
def save_character():
    record = parse_character_payload(read_json_body())
    turn_order = get_turn_order()
    is_new = is_new_character(record)
    if is_new:
        record["owner_id"] = current_discord_id()
    else:
        require_visible_character(record["id"])
    saved = turn_order.upsert(db_utils, record)
    if is_new and turn_order.selected_encounter_id is not None:
        db_utils.add_character_to_encounter(turn_order.selected_encounter_id, saved["id"])
    logger.info("Saved character %s (%s)", saved["id"], saved["name"])
    return render_template("character_row.html", character=dict(saved, edit_mode=False))


@app.route("/delete-character", methods=["POST"])
def delete_character():
    character_id = read_int(read_json_body(), "id")
    require_visible_character(character_id)
    db_utils.delete_character(character_id)
    turn_order = get_turn_order()
    turn_order.remove(character_id)
    return render_character_list(turn_order)


@app.route("/search-characters")
def search_characters():
    turn_order = get_turn_order()
    member_ids = []
    if turn_order.selected_encounter_id is not None:
        member_ids = db_utils.list_encounter_character_ids(turn_order.selected_encounter_id)
    results = search_candidates(db_utils.list_characters(), request.args.get("q", ""), exclude_ids=member_ids)
    return render_template("search_results.html", characters=results)


@app.route("/add-character-to-encounter", methods=["POST"])
def add_character_to_encounter():
    character_id = read_int(read_json_body(), "character_id")
    turn_order = get_turn_order()
    encounter_id = require_selected_encounter(turn_order)
    if not db_utils.get_character(character_id):
        abort(404, "Character not found")
    db_utils.add_character_to_encounter(encounter_id, character_id)
    turn_order.load(db_utils)
    return render_character_list(turn_order)


@app.route("/remove-character-from-encounter", methods=["POST"])
def remove_character_from_encounter():
    character_id = read_int(read_json_body(), "character_id")
    turn_order = get_turn_order()
    encounter_id = require_selected_encounter(turn_order)
    db_utils.remove_character_from_encounter(encounter_id, character_id)
    turn_order.load(db_utils)
    return render_character_list(turn_order)


# --- Discord login ---

@app.route("/login/discord", methods=["GET", "POST"])
def discord_login():
    state = discord_auth.generate_state()
    session["oauth_state"] = state
    url = discord_auth.build_authorize_url(
        app.config["DISCORD_CLIENT_ID"],
        app.config["DISCORD_REDIRECT_URI"],
        state,
    )
    logger.info("Redirecting to Discord OAuth")
    return redirect(url, code=307)


@app.route("/auth/discord/callback")
def discord_callback():
    code = request.args.get("code")
    state = request.args.get("state")
    if not code:
        abort(400, "No code in request")
    expected_state = session.pop("oauth_state", None)
    if not expected_state or expected_state != state:
        logger.warning("OAuth state mismatch")
        abort(400, "Invalid state parameter")

    token = discord_auth.exchange_code(
        code,
        app.config["DISCORD_CLIENT_ID"],
        app.config["DISCORD_CLIENT_SECRET"],
        app.config["DISCORD_REDIRECT_URI"],
    )
    user = discord_auth.fetch_user(token["access_token"])
    discord_id = str(user["id"])

    db_utils.upsert_user(
        discord_id,
        user.get("username") or "",
        discriminator=user.get("discriminator"),
        avatar=user.get("avatar"),
    )

    # Drop the anonymous turn order and any stale one for this user.
    forget_turn_order()
    session["discord_id"] = discord_id
    session["discord_user"] = discord_auth.display_name(user)
    forget_turn_order()
    logger.info("Discord user %s logged in", discord_id)
    return redirect("/", code=303)


@app.route("/logout")
def logout():
    forget_turn_order()
    session.clear()
    return redirect("/", code=303)


if __name__ == "__main__":
    configure_logging()
    init_db()
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", DEFAULT_PORT)))
