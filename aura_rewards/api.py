"""HTTP API consumed by the Telegram Mini App."""
import hashlib
import hmac
import json
import logging
from typing import Optional
from urllib.parse import parse_qsl

from flask import Blueprint, Flask, current_app, jsonify, request
from flask_cors import CORS

from aura_rewards.errors import AuraError, ErrorKind, UnauthorizedError
from aura_rewards.models.responses import TransferResult
from aura_rewards.runtime import Services

logger = logging.getLogger(__name__)

api = Blueprint("api", __name__)

STATUS_BY_KIND = {
    ErrorKind.INVALID_INPUT: 400,
    ErrorKind.INSUFFICIENT_BALANCE: 400,
    ErrorKind.SELF_TRANSFER: 400,
    ErrorKind.ALREADY_OPENED: 400,
    ErrorKind.NOT_ELIGIBLE: 400,
    ErrorKind.NOTHING_TO_CLAIM: 400,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CHAIN_SUBMISSION_FAILURE: 502,
    ErrorKind.CHAIN_CONFIRMATION_FAILURE: 502,
    ErrorKind.TIMEOUT: 504,
}


def validate_init_data(init_data: str, bot_token: str) -> Optional[dict]:
    """Telegram Web App initData check. Returns the signed-in user, or None if the signature is wrong."""
    if not init_data or not bot_token:
        return None
    params = dict(parse_qsl(init_data, keep_blank_values=True))
    received = params.pop("hash", None)
    if not received:
        return None
    data_check_string = "\n".join(f"{k}={v}" for k, v in sorted(params.items()))
    secret = hmac.new(b"WebAppData", bot_token.encode(), hashlib.sha256).digest()
    expected = hmac.new(secret, data_check_string.encode(), hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, received):
        return None
    try:
        return json.loads(params.get("user") or "{}")
    except ValueError:
        return None


def _services() -> Services:
    return current_app.extensions["aura_rewards"]


def _authorize(user_id: str) -> None:
    services = _services()
    if not services.settings.REQUIRE_INIT_DATA:
        return
    init_data = request.headers.get("X-Telegram-Init-Data") or request.args.get("initData", "")
    user = validate_init_data(init_data, services.settings.TELEGRAM_BOT_TOKEN or "")
    if not user or str(user.get("id")) != str(user_id):
        raise UnauthorizedError("Unauthorized")


def _transfer_payload(result: TransferResult) -> dict:
    payload = {"success": result.success}
    if result.success:
        payload.update({"txHash": result.tx_hash, "gasUsed": result.gas_used, "amount": result.amount,
                        "toAddress": result.to_address})
    else:
        payload.update({"error": result.error, "errorKind": result.error_kind.value if result.error_kind else None})
        if result.tx_hash:
            payload["txHash"] = result.tx_hash
        if result.available is not None:
            payload.update({"attempted": result.attempted, "available": result.available})
    return payload


@api.errorhandler(AuraError)
def handle_aura_error(e: AuraError):
    return jsonify({"success": False, "error": e.message, "errorKind": e.kind.value}), STATUS_BY_KIND.get(e.kind, 400)


@api.route("/api/wallet/<user_id>")
def get_wallet(user_id):
    _authorize(user_id)
    services = _services()
    wallet = services.wallets.resolve(user_id)
    balances = {"core": services.wallets.balance_of(wallet.address)}
    if services.settings.USDT_CONTRACT_ADDRESS:
        balances["usdt"] = services.wallets.balance_of(wallet.address, services.settings.USDT_CONTRACT_ADDRESS)
    if services.settings.AURA_TOKEN_CONTRACT_ADDRESS:
        balances["aura"] = services.wallets.balance_of(wallet.address, services.settings.AURA_TOKEN_CONTRACT_ADDRESS)

    user = services.store.get_user(user_id)
    return jsonify({
        "success": True,
        "address": wallet.address,
        "balances": balances,
        "walletType": wallet.wallet_type,
        "isDeployed": wallet.is_deployed,
        "predictedContractAddress": wallet.predicted_contract_address,
        "user": {"username": user.username, "firstName": user.first_name, "lastName": user.last_name} if user else None,
    })


@api.route("/api/transfer", methods=["POST"])
def transfer():
    body = request.get_json(silent=True) or {}
    user_id = str(body.get("userId") or "").strip()
    to_address = str(body.get("toAddress") or "").strip()
    amount = body.get("amount")
    if not user_id or not to_address or amount in (None, ""):
        return jsonify({"success": False, "error": "userId, toAddress and amount are required"}), 400
    _authorize(user_id)

    services = _services()
    token = services.payments.resolve_token(body.get("token"))
    result = services.payments.send(user_id, to_address, amount, token, message=body.get("message"))
    return jsonify(_transfer_payload(result)), 200 if result.success else STATUS_BY_KIND.get(result.error_kind, 400)


@api.route("/api/quest/<user_id>")
def get_quest(user_id):
    _authorize(user_id)
    status = _services().quests.get_status(user_id)
    return jsonify({
        "date": status.day.isoformat(),
        "completed": status.completed,
        "completedAt": status.completed_at.isoformat() if status.completed_at else None,
        "eligible": status.eligible,
        "opened": status.opened,
        "rewardAmount": status.reward_amount,
        "openedAt": status.opened_at.isoformat() if status.opened_at else None,
        "transactionHash": status.transaction_hash,
        "claimable": status.claimable,
        "messageCount": status.message_count,
    })


@api.route("/api/open-chest/<user_id>", methods=["POST"])
def open_chest(user_id):
    _authorize(user_id)
    opening = _services().quests.open_chest(user_id)
    return jsonify({"success": True, "reward": opening.reward, "date": opening.day.isoformat()})


@api.route("/api/claim-aura/<user_id>", methods=["POST"])
def claim_aura(user_id):
    _authorize(user_id)
    result = _services().quests.claim(user_id)
    return jsonify(_transfer_payload(result)), 200 if result.success else STATUS_BY_KIND.get(result.error_kind, 400)


@api.route("/api/quest-history/<user_id>")
def quest_history(user_id):
    _authorize(user_id)
    services = _services()
    history = services.quests.get_history(user_id, services.settings.QUEST_HISTORY_LIMIT)
    return jsonify([entry.model_dump(mode="json") for entry in history])


@api.route("/api/aura-balance/<user_id>")
def aura_balance(user_id):
    _authorize(user_id)
    services = _services()
    token = services.settings.AURA_TOKEN_CONTRACT_ADDRESS
    if not token:
        return jsonify({"balance": "0"})
    wallet = services.wallets.resolve(user_id)
    return jsonify({"balance": services.wallets.balance_of(wallet.address, token)})


@api.route("/health")
def health():
    services = _services()
    return jsonify({"status": "ok", "bufferedKeys": len(services.buffer), "timestamp": services.clock.now().isoformat()})


def create_app(services: Services) -> Flask:
    app = Flask(__name__)
    app.extensions["aura_rewards"] = services
    CORS(app)
    app.register_blueprint(api)
    return app
