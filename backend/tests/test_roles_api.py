from app import get_db
from app.audit.masking import MASK
from app.models.audit import AuditLog
from app.models.authz import Role
from app.services.policy import compute_effective_permissions, count_owner_users
from tests.test_lifecycle_helpers import login_headers, seed_user_with_perms


def _audits(entity_type, entity_id):
    session = get_db()
    rows = session.query(AuditLog).filter_by(entity_type=entity_type, entity_id=entity_id).order_by(AuditLog.id).all()
    session.close()
    return rows


def test_role_crud_flow(client, app_instance):
    owner = seed_user_with_perms('owner@test.local', ['ADMIN.ROLE.MANAGE', 'ADMIN.USER.MANAGE'], role_name='Owner')
    headers = login_headers(client, 'owner@test.local')

    resp = client.post('/iam/roles', json={'name': 'TempRole'}, headers=headers)
    assert resp.status_code == 201, resp.get_json()
    role_id = resp.get_json()['id']
    assert client.post('/iam/roles', json={'name': 'TempRole'}, headers=headers).status_code == 400
    assert [a.action for a in _audits('Role', role_id)] == ['CREATE']

    listing = client.get('/iam/roles', headers=headers).get_json()['data']
    assert any(r['name'] == 'TempRole' for r in listing)

    with app_instance.app_context():
        owners = count_owner_users()
        perms = compute_effective_permissions(owner.id)['perms']
        get_db().close()
    assert 'ADMIN.ROLE.MANAGE' in perms
    remove_owner_attempt = client.put(f'/iam/users/{owner.id}/roles', json={'role_ids': [role_id]}, headers=headers)
    if owners == 1:
        assert remove_owner_attempt.status_code == 400
    else:
        assert remove_owner_attempt.status_code == 200

    resp = client.delete(f'/iam/roles/{role_id}', headers=headers)
    assert resp.status_code == 200
    assert _audits('Role', role_id)[-1].action == 'DELETE'


def test_system_roles_cannot_be_deleted(client):
    seed_user_with_perms('roleadmin@test.local', ['ADMIN.ROLE.MANAGE'], role_name='RoleAdmin')
    headers = login_headers(client, 'roleadmin@test.local')
    session = get_db()
    role = Role(name='LockedSystemRole', is_system=True, description_i18n={'en': 'locked'})
    session.add(role); session.commit(); session.close()
    resp = client.delete(f'/iam/roles/{role.id}', headers=headers)
    assert resp.status_code == 400
    assert client.delete('/iam/roles/999999', headers=headers).status_code == 404


def test_user_create_and_update_are_audited_without_password(client):
    seed_user_with_perms('useradmin@test.local', ['ADMIN.USER.MANAGE'], role_name='UserAdmin')
    headers = login_headers(client, 'useradmin@test.local')
    resp = client.post('/iam/users', json={'name': 'Clerk', 'email': 'clerk@test.local', 'password': 'secret1'}, headers=headers)
    assert resp.status_code == 201, resp.get_json()
    uid = resp.get_json()['id']
    resp = client.put(f'/iam/users/{uid}', json={'name': 'Clerk Two', 'password': 'secret2'}, headers=headers)
    assert resp.status_code == 200

    create, update = _audits('User', uid)
    assert create.new_value['password_hash'] == MASK
    assert update.old_value['name'] == 'Clerk' and update.new_value['name'] == 'Clerk Two'
    assert update.old_value['password_hash'] == MASK and update.new_value['password_hash'] == MASK
    assert 'secret' not in str(update.new_value)

    # deactivated users cannot log in
    client.put(f'/iam/users/{uid}', json={'is_active': False}, headers=headers)
    assert client.post('/iam/auth/login', json={'email': 'clerk@test.local', 'password': 'secret2'}).status_code == 401
