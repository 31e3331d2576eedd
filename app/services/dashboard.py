"""Admin dashboard figures, computed by scanning the collections."""

from collections import Counter


def _distribution(counter):
    return [{'name': str(name), 'value': value} for name, value in sorted(counter.items(), key=lambda kv: str(kv[0]))]


def dashboard_summary(datastore):
    users = datastore.users.all()
    students = [u for u in users if u.is_student()]
    subjects = datastore.subjects.all()

    return {
        'backend': datastore.backend,
        'total_students': len(students),
        'total_admins': sum(1 for u in users if u.is_admin()),
        'total_subjects': len(subjects),
        'total_notices': datastore.notices.count(),
        'total_materials': datastore.materials.count(),
        'students_by_branch': _distribution(Counter(s.branch or 'Unknown' for s in students)),
        'students_by_semester': _distribution(Counter(s.semester or 'Unknown' for s in students)),
        'subjects_by_branch': _distribution(Counter(s.branch or 'Unknown' for s in subjects)),
    }


def collection_stats(datastore):
    """``get_stats`` of every repository that has one."""
    return {
        name: repository.get_stats()
        for name, repository in datastore
        if hasattr(repository, 'get_stats')
    }
