import argparse
import os
from datetime import timedelta

from werkzeug.security import generate_password_hash

from app import create_app
from app.firestore_models import utcnow
from app.json_store import JsonFileStore
from app.repositories import get_datastore

SAMPLE_SUBJECTS = [
    {'name': 'Engineering Mathematics I', 'code': 'MA101', 'branch': 'Computer Engineering', 'semester': 1},
    {'name': 'Programming in C', 'code': 'CS102', 'branch': 'Computer Engineering', 'semester': 1},
    {'name': 'Data Structures', 'code': 'DS101', 'branch': 'Computer Engineering', 'semester': 3},
    {'name': 'Database Management Systems', 'code': 'CS301', 'branch': 'Computer Engineering', 'semester': 4,
     'type': 'Theory', 'credits': 4},
    {'name': 'Web Technology Lab', 'code': 'CS352', 'branch': 'Computer Engineering', 'semester': 5,
     'type': 'Practical', 'credits': 2, 'hours': 30},
    {'name': 'Thermodynamics', 'code': 'ME201', 'branch': 'Mechanical Engineering', 'semester': 3},
    {'name': 'Strength of Materials', 'code': 'ME202', 'branch': 'Mechanical Engineering', 'semester': 3},
]


def seed_database(datastore, admin_password='admin123'):
    """Create sample records in whichever backend ``datastore`` uses.

    Records that already exist (same subject code, same admin email) are skipped.
    """
    created = {'subjects': 0, 'users': 0, 'notices': 0, 'offers': 0}

    print(f"Seeding {datastore.backend} datastore...")
    for subject in SAMPLE_SUBJECTS:
        if datastore.subjects.find_by_code(subject['code']) is None:
            datastore.subjects.create(subject)
            created['subjects'] += 1

    admin = datastore.users.find_by_email('admin@college.edu')
    if admin is None:
        admin = datastore.users.create({
            'name': 'Portal Admin',
            'email': 'admin@college.edu',
            'password': generate_password_hash(admin_password),
            'college': 'Government Polytechnic',
            'user_type': 'admin',
        })
        created['users'] += 1

    if not datastore.notices.find({'created_by': admin.id}, limit=1):
        datastore.notices.create({
            'title': 'Welcome to the portal',
            'content': 'Materials, quizzes and notices for every semester are available here.',
            'type': 'announcement',
            'is_pinned': True,
            'created_by': admin.id,
        })
        created['notices'] += 1

    if not datastore.offers.find({'created_by': admin.id}, limit=1):
        now = utcnow()
        datastore.offers.create({
            'title': 'Early bird discount',
            'description': '20% off any semester subscription',
            'discount_type': 'percentage',
            'discount_value': 20,
            'original_price': 499,
            'start_date': now,
            'end_date': now + timedelta(days=30),
            'max_uses': 100,
            'created_by': admin.id,
        })
        created['offers'] += 1

    for name, count in created.items():
        print(f"  {name}: {count} created")
    return created


def migrate_local_to_firestore(data_dir, datastore):
    """Copy every local JSON collection into Firestore, keeping record IDs.

    Records whose ID already exists in Firestore are left untouched.
    """
    if datastore.backend != 'firestore':
        raise RuntimeError('Firestore is not ready; check the Firebase credentials')

    copied = {}
    for name, repository in datastore:
        local = JsonFileStore(os.path.join(data_dir, f'{repository.collection}.json'))
        count = 0
        for record in local.read_all():
            doc_id = record.get('id')
            if not doc_id or repository.store.get(doc_id) is not None:
                continue
            doc = repository.model.from_dict(record, doc_id)
            repository.store.put(doc_id, doc.to_dict())
            count += 1
        copied[name] = count
        print(f"  {repository.collection}: {count} copied")
    return copied


def main(argv=None):
    parser = argparse.ArgumentParser(description='Seed the portal datastore.')
    parser.add_argument('--migrate', action='store_true',
                        help='copy local JSON data into Firestore instead of seeding')
    args = parser.parse_args(argv)

    app = create_app()
    with app.app_context():
        datastore = get_datastore()
        if args.migrate:
            migrate_local_to_firestore(app.config['DATA_DIR'], datastore)
        else:
            seed_database(datastore)


if __name__ == '__main__':
    main()
