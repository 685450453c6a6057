from flask import Blueprint, request, jsonify
from flask_login import login_user, logout_user, login_required, current_user
from .models import db, Identity

identity = Blueprint('identity', __name__)

@identity.route('/anonymous', methods=['POST', 'OPTIONS'])
def sign_in_anonymously():
    """Issue a fresh anonymous identity and log it in.

    The returned token is shown once; clients keep it to resume later.
    """
    if request.method == 'OPTIONS':
        return jsonify({'status': 'ok'}), 200
    new_identity, token = Identity.issue()
    db.session.add(new_identity)
    db.session.commit()
    login_user(new_identity, remember=True)
    return jsonify({'uid': new_identity.uid, 'token': token}), 201

@identity.route('/resume', methods=['POST', 'OPTIONS'])
def resume():
    if request.method == 'OPTIONS':
        return jsonify({'status': 'ok'}), 200
    data = request.get_json(silent=True) or {}
    uid = data.get('uid')
    token = data.get('token')
    if not uid or not token:
        return jsonify({'error': 'uid_and_token_required'}), 400
    found = Identity.query.filter_by(uid=uid).first()
    if found and found.check_token(token):
        login_user(found, remember=True)
        return jsonify({'uid': found.uid})
    return jsonify({'error': 'invalid_credentials'}), 401

@identity.route('/me', methods=['GET'])
@login_required
def me():
    return jsonify(current_user.to_dict())

@identity.route('/logout', methods=['POST'])
@login_required
def logout():
    logout_user()
    return jsonify({'success': True})
