"""Entity-specific finders, validation and lifecycle helpers."""

from datetime import timedelta

import pytest

from app.errors import AttemptLimitError, OfferNotValidError, ValidationError
from app.firestore_models import Notice, Offer, Quiz, Subscription, utcnow


class TestSubjects:
    def test_branch_and_semester_scenario(self, datastore):
        ds = datastore.subjects.create({
            'name': 'Data Structures', 'code': 'DS101',
            'branch': 'Computer Engineering', 'semester': 3,
        })

        found = datastore.subjects.find({'branch': 'Computer Engineering', 'semester': 3})
        assert ds.id in [s.id for s in found]
        assert datastore.subjects.find({'branch': 'Mechanical Engineering'}) == []

    def test_numeric_strings_are_coerced(self, datastore):
        subject = datastore.subjects.create({'name': 'DS', 'semester': '3', 'credits': '2'})
        assert subject.semester == 3
        assert subject.credits == 2

    @pytest.mark.parametrize('semester', [None, 'three', 0, 7, 2.5, True])
    def test_invalid_semester_is_rejected(self, datastore, semester):
        with pytest.raises(ValidationError) as exc:
            datastore.subjects.create({'name': 'DS', 'semester': semester})
        assert exc.value.field == 'semester'
        assert datastore.subjects.find() == []

    def test_invalid_type_and_credits_are_rejected(self, datastore):
        with pytest.raises(ValidationError):
            datastore.subjects.create({'name': 'DS', 'semester': 1, 'type': 'Seminar'})
        with pytest.raises(ValidationError):
            datastore.subjects.create({'name': 'DS', 'semester': 1, 'credits': 'four'})

    def test_patch_is_validated(self, datastore):
        subject = datastore.subjects.create({'name': 'DS', 'semester': 1})
        with pytest.raises(ValidationError):
            datastore.subjects.find_by_id_and_update(subject.id, {'semester': 9})
        assert datastore.subjects.find_by_id(subject.id).semester == 1

    def test_default_ordering_semester_then_name(self, datastore):
        for name, semester in [('B', 2), ('A', 2), ('Z', 1)]:
            datastore.subjects.create({'name': name, 'semester': semester})
        assert [s.name for s in datastore.subjects.find()] == ['Z', 'A', 'B']

    def test_find_by_branch(self, datastore):
        a = datastore.subjects.create({'name': 'A', 'branch': 'CE', 'semester': 3})
        b = datastore.subjects.create({'name': 'B', 'branch': 'CE', 'semester': 4})
        datastore.subjects.create({'name': 'C', 'branch': 'ME', 'semester': 3})
        assert [s.id for s in datastore.subjects.find_by_branch('CE')] == [a.id, b.id]
        assert [s.id for s in datastore.subjects.find_by_branch('CE', semester=4)] == [b.id]

    def test_delete_all_by_branch(self, datastore):
        datastore.subjects.create({'name': 'A', 'branch': 'CE', 'semester': 1})
        datastore.subjects.create({'name': 'B', 'branch': 'ME', 'semester': 1})
        assert datastore.subjects.delete_all_by_branch('CE') == 1
        assert [s.name for s in datastore.subjects.find()] == ['B']
        assert datastore.subjects.delete_all() == 1


class TestNotices:
    def test_newest_first(self, datastore):
        first = datastore.notices.create({'title': 'first'})
        second = datastore.notices.create({'title': 'second'})
        assert [n.id for n in datastore.notices.find({})] == [second.id, first.id]

    def test_pinned_before_newer_unpinned(self, datastore):
        pinned = datastore.notices.create({'title': 'old but pinned', 'is_pinned': True})
        newer = datastore.notices.create({'title': 'newer'})
        assert [n.id for n in datastore.notices.find({})] == [pinned.id, newer.id]

    def test_find_public(self, datastore):
        everyone = datastore.notices.create({'title': 'all'})
        students = datastore.notices.create({'title': 'students', 'target_audience': 'students'})
        datastore.notices.create({'title': 'admins', 'target_audience': 'admins'})
        assert [n.id for n in datastore.notices.find_public()] == [students.id, everyone.id]

    def test_find_public_with_undated_record(self, datastore):
        dated = datastore.notices.create({'title': 'dated'})
        datastore.notices.store.put('legacy', {'title': 'legacy', 'target_audience': 'all'})
        assert [n.id for n in datastore.notices.find_public()] == [dated.id, 'legacy']

    def test_find_public_reads_empty_during_outage(self, firestore_datastore, firestore_client):
        firestore_datastore.notices.create({'title': 'all'})
        firestore_client.outage = True
        assert firestore_datastore.notices.find_public() == []

    def test_is_expired(self):
        now = utcnow()
        assert Notice(expires_at=now - timedelta(minutes=1)).is_expired(now)
        assert not Notice(expires_at=now + timedelta(minutes=1)).is_expired(now)
        assert not Notice().is_expired(now)

    def test_find_with_options(self, datastore):
        a = datastore.notices.create({'title': 'a', 'type': 'exam'})
        b = datastore.notices.create({'title': 'b', 'type': 'exam', 'is_pinned': True})
        datastore.notices.create({'title': 'c', 'type': 'event'})
        oldest_first = datastore.notices.find_with_options({'type': 'exam'}, sort={'created_at': 'asc'})
        assert [n.id for n in oldest_first] == [a.id, b.id]
        assert [n.id for n in datastore.notices.find_with_options(limit=1)] == [b.id]

    def test_pinned_ordering_without_index(self, firestore_datastore, firestore_client):
        firestore_client.require_indexes = True
        pinned = firestore_datastore.notices.create({'title': 'p', 'is_pinned': True, 'type': 'exam'})
        newer = firestore_datastore.notices.create({'title': 'n', 'type': 'exam'})
        found = firestore_datastore.notices.find({'type': 'exam'})
        assert [n.id for n in found] == [pinned.id, newer.id]


class TestOffers:
    def _offer(self, now, **overrides):
        data = dict(is_active=True, start_date=now - timedelta(days=1),
                    end_date=now + timedelta(days=1), max_uses=None, used_count=0)
        data.update(overrides)
        return Offer(**data)

    def test_valid_inside_window(self):
        now = utcnow()
        assert self._offer(now).is_valid(now)

    def test_boundaries_are_inclusive(self):
        now = utcnow()
        assert self._offer(now, end_date=now).is_valid(now)
        assert self._offer(now, start_date=now).is_valid(now)
        assert not self._offer(now, end_date=now - timedelta(microseconds=1)).is_valid(now)
        assert not self._offer(now, start_date=now + timedelta(microseconds=1)).is_valid(now)

    def test_usage_limit(self):
        now = utcnow()
        assert not self._offer(now, max_uses=5, used_count=5).is_valid(now)
        assert self._offer(now, max_uses=5, used_count=4).is_valid(now)
        assert self._offer(now, max_uses=None, used_count=10_000).is_valid(now)

    def test_inactive_or_undated_is_invalid(self):
        now = utcnow()
        assert not self._offer(now, is_active=False).is_valid(now)
        assert not Offer(is_active=True).is_valid(now)

    @pytest.mark.parametrize('discount_type,value,expected', [
        ('percentage', 20, 80),
        ('fixed', 30, 70),
        ('fixed', 150, 0),
        ('free', 0, 0),
        ('other', 10, 100),
    ])
    def test_calculate_discounted_price(self, discount_type, value, expected):
        offer = Offer(discount_type=discount_type, discount_value=value)
        assert offer.calculate_discounted_price(100) == pytest.approx(expected)

    def test_create_forces_zero_usage_and_prices(self, datastore):
        offer = datastore.offers.create({'title': 'x', 'used_count': 7, 'discount_value': 25,
                                         'original_price': 200})
        assert offer.used_count == 0
        assert offer.discounted_price == pytest.approx(150)

    def test_use_increments_until_exhausted(self, datastore):
        now = utcnow()
        offer = datastore.offers.create({'title': 'x', 'start_date': now - timedelta(hours=1),
                                         'end_date': now + timedelta(hours=1), 'max_uses': 2})
        offer.use()
        offer.use()
        assert datastore.offers.find_by_id(offer.id).used_count == 2
        with pytest.raises(OfferNotValidError):
            offer.use()

    def test_stale_instances_cannot_exceed_max_uses(self, datastore):
        now = utcnow()
        created = datastore.offers.create({'title': 'x', 'start_date': now - timedelta(hours=1),
                                           'end_date': now + timedelta(hours=1), 'max_uses': 1})
        first = datastore.offers.find_by_id(created.id)
        second = datastore.offers.find_by_id(created.id)

        first.use()
        with pytest.raises(OfferNotValidError):
            second.use()

        assert datastore.offers.find_by_id(created.id).used_count == 1

    def test_deleted_offer_cannot_be_used(self, datastore):
        now = utcnow()
        offer = datastore.offers.create({'title': 'x', 'start_date': now - timedelta(hours=1),
                                         'end_date': now + timedelta(hours=1)})
        datastore.offers.delete_by_id(offer.id)
        with pytest.raises(OfferNotValidError):
            offer.use()

    def test_find_applicable_matches_wildcards(self, datastore):
        now = utcnow()
        window = {'start_date': now - timedelta(days=1), 'end_date': now + timedelta(days=1)}
        everyone = datastore.offers.create(dict(window, title='all'))
        ce3 = datastore.offers.create(dict(window, title='ce3', branch='CE', semester=3))
        datastore.offers.create(dict(window, title='me', branch='ME'))
        datastore.offers.create(dict(window, title='yearly', subscription_type='yearly'))
        datastore.offers.create({'title': 'expired', 'start_date': now - timedelta(days=3),
                                 'end_date': now - timedelta(days=2)})

        found = datastore.offers.find_applicable('CE', 3)

        assert sorted(o.id for o in found) == sorted([everyone.id, ce3.id])

    def test_stats(self, datastore):
        now = utcnow()
        datastore.offers.create({'title': 'live', 'start_date': now - timedelta(days=1),
                                 'end_date': now + timedelta(days=1),
                                 'original_price': 100, 'discount_value': 10})
        old = datastore.offers.create({'title': 'old', 'start_date': now - timedelta(days=3),
                                       'end_date': now - timedelta(days=2),
                                       'original_price': 100, 'discount_value': 50})
        datastore.offers.find_by_id_and_update(old.id, {'used_count': 2})
        stats = datastore.offers.get_stats()
        assert stats['total'] == 2
        assert stats['active'] == 1
        assert stats['expired'] == 1
        assert stats['total_uses'] == 2
        assert stats['total_savings'] == pytest.approx(100)


class TestSubscriptions:
    def test_expired_yesterday_has_no_access_even_if_active(self, datastore):
        now = utcnow()
        datastore.subscriptions.create({
            'user_id': 'u1', 'status': 'active',
            'start_date': now - timedelta(days=30), 'end_date': now - timedelta(days=1),
        })
        assert datastore.subscriptions.has_access('u1', 'quizzes') is False

    def test_current_subscription_grants_listed_features(self, datastore):
        now = utcnow()
        datastore.subscriptions.create({
            'user_id': 'u1', 'semester': 3,
            'start_date': now - timedelta(days=1), 'end_date': now + timedelta(days=30),
            'features': ['materials'],
        })
        assert datastore.subscriptions.has_access('u1', 'materials') is True
        assert datastore.subscriptions.has_access('u1', 'quizzes') is False
        assert datastore.subscriptions.has_access('u1', 'materials', semester=4) is False
        assert datastore.subscriptions.has_access('u2', 'materials') is False

    def test_cancelled_has_no_access(self, datastore):
        now = utcnow()
        sub = datastore.subscriptions.create({
            'user_id': 'u1', 'start_date': now - timedelta(days=1), 'end_date': now + timedelta(days=1),
        })
        datastore.subscriptions.update_status(sub.id, 'cancelled')
        assert datastore.subscriptions.has_access('u1', 'quizzes') is False

    def test_invalid_status_is_rejected(self, datastore):
        sub = datastore.subscriptions.create({'user_id': 'u1'})
        with pytest.raises(ValidationError):
            datastore.subscriptions.update_status(sub.id, 'paused')
        with pytest.raises(ValidationError):
            datastore.subscriptions.create({'user_id': 'u1', 'status': 'paused'})

    def test_store_error_means_no_access(self, firestore_datastore, firestore_client):
        now = utcnow()
        firestore_datastore.subscriptions.create({
            'user_id': 'u1', 'start_date': now - timedelta(days=1), 'end_date': now + timedelta(days=1),
        })
        firestore_client.outage = True
        assert firestore_datastore.subscriptions.has_access('u1', 'quizzes') is False

    def test_days_left_rounds_up(self):
        now = utcnow()
        sub = Subscription(end_date=now + timedelta(days=2, hours=1))
        assert sub.days_left(now) == 3

    def test_stats(self, datastore):
        datastore.subscriptions.create({'user_id': 'u1', 'price': 100})
        datastore.subscriptions.create({'user_id': 'u2', 'price': 50, 'status': 'expired'})
        stats = datastore.subscriptions.get_stats()
        assert stats == {'total': 2, 'active': 1, 'expired': 1, 'cancelled': 0,
                         'pending': 0, 'revenue': 150}


class TestQuizzes:
    QUESTIONS = [
        {'id': 'q1', 'question': '1+1', 'options': ['1', '2'], 'correct_answer': '2'},
        {'id': 'q2', 'question': '2+2', 'options': ['4', '5'], 'correct_answer': '4'},
    ]

    def test_grade(self):
        quiz = Quiz(questions=self.QUESTIONS, passing_score=50)
        result = quiz.grade([
            {'question_id': 'q1', 'selected_answer': '2'},
            {'question_id': 'q2', 'selected_answer': '5'},
        ])
        assert result['score'] == 1
        assert result['wrong_answers'] == 1
        assert result['percentage'] == 50
        assert result['passed'] is True
        assert [a['is_correct'] for a in result['answers']] == [True, False]

    def test_grade_without_questions(self):
        assert Quiz().grade([])['percentage'] == 0

    def test_finders_return_active_only(self, datastore):
        active = datastore.quizzes.create({'title': 'a', 'subject_id': 's1', 'semester': 3, 'branch': 'CE'})
        datastore.quizzes.create({'title': 'b', 'subject_id': 's1', 'is_active': False})
        assert [q.id for q in datastore.quizzes.find_by_subject('s1')] == [active.id]
        assert [q.id for q in datastore.quizzes.find_by_semester_branch(3, 'CE')] == [active.id]
        assert datastore.quizzes.get_stats() == {
            'total': 2, 'active': 1, 'inactive': 1, 'average_questions': 0}

    def test_attempt_lifecycle(self, datastore):
        quiz = datastore.quizzes.create({'title': 'DS', 'questions': self.QUESTIONS, 'max_attempts': 2})
        attempts = datastore.quiz_attempts

        first = attempts.start_attempt('u1', quiz)
        assert first.status == 'started'
        assert first.completed_at is None
        attempts.submit(first, quiz, [{'question_id': 'q1', 'selected_answer': '2'},
                                      {'question_id': 'q2', 'selected_answer': '4'}], time_spent=60)

        second = attempts.start_attempt('u1', quiz)
        assert second.attempt_number == 2
        attempts.submit(second, quiz, [{'question_id': 'q1', 'selected_answer': '1'}], time_spent=30)

        assert not attempts.can_attempt('u1', quiz.id, quiz.max_attempts)
        with pytest.raises(AttemptLimitError):
            attempts.start_attempt('u1', quiz)

        stored = attempts.find_by_id(first.id)
        assert stored.status == 'completed'
        assert stored.passed is True
        assert attempts.get_best_attempt('u1', quiz.id).id == first.id
        assert attempts.get_latest_attempt('u1', quiz.id).id == second.id

        stats = attempts.get_stats(quiz.id)
        assert stats['total'] == 2
        assert stats['passed'] == 1
        assert stats['pass_rate'] == 50
        assert stats['average_time'] == 45


class TestNotifications:
    def test_create_forces_unread_and_undelivered(self, datastore):
        n = datastore.notifications.create({'user_id': 'u1', 'title': 't', 'is_read': True,
                                            'is_email_sent': True})
        assert n.is_read is False
        assert n.is_email_sent is False
        assert n.read_at is None
        assert n.sent_at is not None

    def test_mark_read_and_unread(self, datastore):
        n = datastore.notifications.create({'user_id': 'u1', 'title': 't'})
        n.mark_as_read()
        stored = datastore.notifications.find_by_id(n.id)
        assert stored.is_read is True
        assert stored.read_at is not None
        stored.mark_as_unread()
        assert datastore.notifications.find_by_id(n.id).read_at is None

    def test_mark_all_as_read(self, datastore):
        for _ in range(3):
            datastore.notifications.create({'user_id': 'u1', 'title': 't'})
        datastore.notifications.create({'user_id': 'u2', 'title': 't'})

        assert datastore.notifications.mark_all_as_read('u1') == 3
        assert datastore.notifications.count_unread('u1') == 0
        assert datastore.notifications.count_unread('u2') == 1

    def test_find_by_category(self, datastore):
        quiz = datastore.notifications.create({'user_id': 'u1', 'category': 'quiz'})
        datastore.notifications.create({'user_id': 'u1', 'category': 'offer'})
        datastore.notifications.create({'user_id': 'u2', 'category': 'quiz'})
        assert [n.id for n in datastore.notifications.find_by_category('u1', 'quiz')] == [quiz.id]

    def test_find_scheduled(self, datastore):
        now = utcnow()
        later = datastore.notifications.create({'user_id': 'u1', 'scheduled_for': now - timedelta(minutes=1)})
        earlier = datastore.notifications.create({'user_id': 'u1', 'scheduled_for': now - timedelta(hours=1)})
        datastore.notifications.create({'user_id': 'u1', 'scheduled_for': now + timedelta(hours=1)})
        datastore.notifications.create({'user_id': 'u1'})
        assert [n.id for n in datastore.notifications.find_scheduled(now)] == [earlier.id, later.id]

    def test_stats(self, datastore):
        datastore.notifications.create({'user_id': 'u1', 'type': 'info', 'category': 'quiz'})
        n = datastore.notifications.create({'user_id': 'u1', 'type': 'warning', 'category': 'quiz'})
        n.mark_as_read()
        stats = datastore.notifications.get_stats('u1')
        assert stats['total'] == 2
        assert stats['read'] == 1
        assert stats['unread'] == 1
        assert stats['by_type'] == {'info': 1, 'warning': 1}
        assert stats['by_category'] == {'quiz': 2}


class TestProgress:
    def test_update_progress_upserts(self, datastore):
        repo = datastore.progress
        created = repo.update_progress('u1', 'm1', 'material', {'progress': 30, 'subject_id': 's1'})
        updated = repo.update_progress('u1', 'm1', 'material', {'progress': 60})
        assert created.id == updated.id
        assert updated.progress == 60
        assert updated.subject_id == 's1'
        assert len(repo.find_by_user('u1')) == 1

    def test_progress_out_of_range_is_rejected(self, datastore):
        with pytest.raises(ValidationError):
            datastore.progress.create({'user_id': 'u1', 'progress': 150})

    def test_mark_completed_and_bookmark(self, datastore):
        p = datastore.progress.create({'user_id': 'u1', 'content_id': 'm1', 'progress': 10})
        p.mark_completed()
        p.toggle_bookmark()
        stored = datastore.progress.find_by_user_and_content('u1', 'm1')
        assert stored.progress == 100
        assert stored.completed is True
        assert stored.bookmarked is True

    def test_semester_summary(self, datastore):
        repo = datastore.progress
        base = {'user_id': 'u1', 'semester': 3, 'branch': 'CE'}
        repo.create(dict(base, content_id='a', subject_id='s1', subject_name='DS', progress=100,
                         completed=True, time_spent=10))
        repo.create(dict(base, content_id='b', subject_id='s1', subject_name='DS', progress=50, time_spent=5))
        repo.create(dict(base, content_id='c', subject_id='s2', subject_name='OS', progress=0))
        repo.create({'user_id': 'u1', 'semester': 4, 'branch': 'CE', 'content_id': 'd', 'progress': 100})

        summary = repo.get_user_semester_progress('u1', 3, 'CE')

        assert summary['total_content'] == 3
        assert summary['completed_content'] == 1
        assert summary['average_progress'] == pytest.approx(50)
        assert summary['total_time_spent'] == 15
        ds = next(s for s in summary['subjects'] if s['subject_id'] == 's1')
        assert ds == {'subject_id': 's1', 'subject_name': 'DS', 'total_content': 2,
                      'completed_content': 1, 'time_spent': 15, 'average_progress': 75}

    def test_stats(self, datastore):
        datastore.progress.create({'user_id': 'u1', 'progress': 100, 'completed': True})
        datastore.progress.create({'user_id': 'u1', 'progress': 0})
        stats = datastore.progress.get_stats('u1')
        assert stats['completion_rate'] == 50
        assert stats['average_progress'] == 50


class TestMaterials:
    def test_downloads_and_rating(self, datastore):
        m = datastore.materials.create({'title': 'notes', 'subject_code': 'DS101'})
        datastore.materials.increment_downloads(m.id)
        datastore.materials.increment_downloads(m.id)
        datastore.materials.update_rating(m.id, 4)
        rated = datastore.materials.update_rating(m.id, 5)
        assert rated.downloads == 2
        assert rated.rating == pytest.approx(4.5)
        assert rated.rating_count == 2
        assert [x.id for x in datastore.materials.find_by_subject_code('DS101')] == [m.id]

    def test_invalid_rating(self, datastore):
        m = datastore.materials.create({'title': 'notes'})
        with pytest.raises(ValidationError):
            datastore.materials.update_rating(m.id, 6)


class TestMaterialRequests:
    def test_upvote_toggles(self, datastore):
        req = datastore.material_requests.create({'user_id': 'u1', 'title': 'OS notes'})
        req.upvote('u2')
        req.upvote('u3')
        req.upvote('u2')
        stored = datastore.material_requests.find_by_id(req.id)
        assert stored.upvoted_by == ['u3']
        assert stored.upvotes == 1

    def test_fulfil(self, datastore):
        req = datastore.material_requests.create({'user_id': 'u1', 'title': 'OS notes'})
        req.update_status('fulfilled', admin_notes='uploaded', fulfilled_by='admin1')
        stored = datastore.material_requests.find_by_id(req.id)
        assert stored.status == 'fulfilled'
        assert stored.fulfilled_by == 'admin1'
        assert stored.fulfilled_at is not None
        with pytest.raises(ValidationError):
            stored.update_status('lost')

    def test_popular_and_similar(self, datastore):
        repo = datastore.material_requests
        low = repo.create({'user_id': 'u1', 'title': 'CN notes', 'subject_id': 's1'})
        high = repo.create({'user_id': 'u1', 'title': 'OS Notes unit 2', 'subject_id': 's2'})
        repo.find_by_id_and_update(high.id, {'upvotes': 5})
        done = repo.create({'user_id': 'u2', 'title': 'DS', 'status': 'fulfilled'})
        repo.find_by_id_and_update(done.id, {'upvotes': 9})

        assert [r.id for r in repo.find_popular(limit=2)] == [high.id, low.id]
        assert repo.has_similar_request('u1', 'os notes', 's2') is True
        assert repo.has_similar_request('u1', 'os notes', 's1') is False
        assert repo.get_stats()['pending'] == 2


class TestUsersAndProjects:
    def test_lookup_by_email_or_student_id(self, datastore):
        user = datastore.users.create({'name': 'A', 'email': 'A@Example.com', 'student_id': 'S1'})
        assert datastore.users.find_by_email('a@example.com').id == user.id
        assert datastore.users.find_by_email_or_student_id('nobody@x.com', 'S1').id == user.id
        assert datastore.users.find_by_email_or_student_id('nobody@x.com', 'S2') is None

    def test_to_json_hides_password(self, datastore):
        user = datastore.users.create({'name': 'A', 'email': 'a@x.com', 'password': 'hash'})
        assert 'password' not in user.to_json()
        assert user.to_json()['created_at'].endswith('+00:00')

    def test_invalid_user_type(self, datastore):
        with pytest.raises(ValidationError):
            datastore.users.create({'name': 'A', 'user_type': 'teacher'})

    def test_project_approval(self, datastore):
        project = datastore.projects.create({'title': 'Robot', 'student_id': 'u1'})
        datastore.projects.create({'title': 'Other', 'student_id': 'u2'})
        approved = datastore.projects.approve(project.id, 'admin1')
        assert approved.status == 'approved'
        assert approved.approved_at is not None
        assert [p.id for p in datastore.projects.find_approved()] == [project.id]
        assert datastore.projects.reject(project.id, 'admin1').status == 'rejected'
        assert len(datastore.projects.find_by_student('u1')) == 1
